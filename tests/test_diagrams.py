"""
Test Suite for Diagram Placement
================================
Unit and integration tests for placeholder scanning, keyword extraction,
local image matching, source routing, remote search and placement.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from cbcdocs.concepts import (
    concepts_from_table,
    format_concept_caption,
    score_visual_potential,
    select_concepts,
)
from cbcdocs.engine import DocumentEngine, PipelineConfig
from cbcdocs.keywords import (
    SubjectCategory,
    categorize_subject,
    clean_concept_text,
    extract_keywords,
    mentions,
    tokenize,
)
from cbcdocs.local_images import (
    LocalImageLibrary,
    LocalImageMatcher,
    clean_filename,
    make_candidate,
    normalize_grade,
    normalize_subject,
    suggest_filename,
)
from cbcdocs.models import (
    Concept,
    Confidence,
    ImageResult,
    ImageSource,
    ParsedTable,
)
from cbcdocs.orchestrator import (
    DiagramPlacementOrchestrator,
    PlacementContext,
    render_figure,
)
from cbcdocs.placeholders import parse_placeholder, scan, strip_leftovers
from cbcdocs.remote_resolver import (
    ProviderError,
    RemoteDiagramResolver,
    build_queries,
    cache_key,
    is_educational_diagram,
    is_potential_diagram,
    simplify_topic,
)
from cbcdocs.router import route
from cbcdocs.session import DiagramSession, UsedImageRegistry
from cbcdocs.table_parser import CONCEPT_BREAKDOWN_HEADERS


PLANT_CELL_IMAGE = "plant-cell-labeled-diagram.png"


def _placeholder(description: str, **extra) -> str:
    fields = {"description": description, **extra}
    body = ", ".join(f'"{k}": "{v}"' for k, v in fields.items())
    return f"[DIAGRAM: {{{body}}}]"


def _make_library(tmp_path, files=(PLANT_CELL_IMAGE,), grade="grade-7", subject="science"):
    folder = tmp_path / grade / subject
    folder.mkdir(parents=True, exist_ok=True)
    for name in files:
        (folder / name).write_bytes(b"\x89PNG")
    return LocalImageLibrary(root=str(tmp_path))


def _make_context(session=None, subject="Integrated Science", document_id="doc-1"):
    return PlacementContext(
        document_id=document_id,
        grade="Grade 7",
        subject=subject,
        session=session or DiagramSession(),
    )


def _fake_commons(titles):
    """Fake `_get_json` answering search and imageinfo queries."""

    async def _get_json(params):
        if params.get("list") == "search":
            return {"query": {"search": [{"title": t} for t in titles]}}
        title = params["titles"]
        return {
            "query": {
                "pages": {
                    "1": {
                        "imageinfo": [{
                            "url": f"https://upload.example.org/{title.replace(' ', '_')}",
                            "size": 2048,
                        }]
                    }
                }
            }
        }

    return _get_json


class _FakeResponse:
    def __init__(self, payload=None, status=200, body=None):
        self.status = status
        self._body = body if body is not None else json.dumps(payload)

    async def text(self):
        return self._body

    async def json(self, content_type=None):
        return json.loads(self._body)


class _FakeHttp:
    """Stands in for aiohttp.ClientSession; answers are used in order."""

    closed = False

    def __init__(self, answers):
        self.answers = list(answers)
        self.requests = []

    def get(self, url, params=None):
        self.requests.append(dict(params or {}))
        answer = self.answers.pop(0)

        class _Request:
            async def __aenter__(self):
                if isinstance(answer, BaseException):
                    raise answer
                return answer

            async def __aexit__(self, *args):
                pass

        return _Request()


def _search_payload(*titles):
    return {"query": {"search": [{"title": t} for t in titles]}}


def _imageinfo_payload(url, size=2048):
    return {"query": {"pages": {"1": {"imageinfo": [{"url": url, "size": size}]}}}}


# ═══════════════════════════════════════════════════════════════════════════════
# PLACEHOLDER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPlaceholderScanner:

    def test_scan_in_order(self):
        content = (
            "Intro\n"
            + _placeholder("Parts of a flower")
            + "\nMiddle\n"
            + _placeholder("The water cycle")
        )
        found = scan(content)
        assert [p.description for p in found] == ["Parts of a flower", "The water cycle"]
        assert found[0].raw_span in content

    def test_metadata_fields(self):
        span = (
            '[DIAGRAM: {"description": "Parts of a flower", "caption": "A flower", '
            '"week": 2, "conceptNumber": "3", "context": "Botany"}]'
        )
        placeholder = parse_placeholder(span)
        assert placeholder.caption == "A flower"
        assert placeholder.week == "2"
        assert placeholder.concept_index == 3
        assert placeholder.context == "Botany"

    def test_multiline_body(self):
        content = '[DIAGRAM: {\n  "description": "Parts of a flower"\n}]'
        assert len(scan(content)) == 1

    def test_malformed_json_skipped(self):
        assert scan("[DIAGRAM: {description: oops}]") == []

    def test_missing_description_skipped(self):
        assert scan('[DIAGRAM: {"caption": "No description"}]') == []

    def test_strip_leftovers(self):
        content = "A [DIAGRAM: {bad}] B [DIAGRAM: unfinished] C"
        cleaned, count = strip_leftovers(content)
        assert "[DIAGRAM" not in cleaned
        assert count == 2

    def test_unclosed_placeholder_does_not_swallow_next(self):
        content = (
            'Intro. [DIAGRAM: {"description": "broken"] Keep this paragraph. '
            + _placeholder("parts of a plant cell")
            + " End."
        )
        found = scan(content)
        assert [p.description for p in found] == ["parts of a plant cell"]
        assert found[0].raw_span == _placeholder("parts of a plant cell")

    def test_braces_and_brackets_inside_strings(self):
        span = '[DIAGRAM: {"description": "Set {a, b} and interval [0, 1]"}]'
        found = scan(f"Before {span} after")
        assert found[0].description == "Set {a, b} and interval [0, 1]"
        assert found[0].raw_span == span

    def test_strip_leftovers_keeps_text_between_placeholders(self):
        content = 'A [DIAGRAM: {"description": "broken"] B [DIAGRAM: {"x": 1}] C'
        cleaned, count = strip_leftovers(content)
        assert cleaned == "A  B  C"
        assert count == 2


# ═══════════════════════════════════════════════════════════════════════════════
# KEYWORD TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestKeywords:

    def test_clean_concept_text(self):
        assert clean_concept_text("Describe the **parts** of a plant cell") == "parts plant cell"

    def test_tokenize_min_length(self):
        assert tokenize("ab plant-cell x_y") == ["plant", "cell"]

    @pytest.mark.parametrize("subject, category", [
        ("Mathematics", SubjectCategory.MATHEMATICS),
        ("Integrated Science", SubjectCategory.SCIENCE),
        ("Home Science", SubjectCategory.PRACTICAL),
        ("Agriculture", SubjectCategory.PRACTICAL),
        ("Social Studies", SubjectCategory.SOCIAL),
        ("CRE", SubjectCategory.SOCIAL),
        ("English", SubjectCategory.LANGUAGE),
        ("Creative Arts", SubjectCategory.ARTS),
        ("Business Studies", SubjectCategory.BUSINESS),
        ("Pre-technical Studies", SubjectCategory.GENERAL),
    ])
    def test_categorize_subject(self, subject, category):
        assert categorize_subject(subject) == category

    def test_mentions_whole_word_with_plural(self):
        assert mentions("animal cells divide", "cell")
        assert not mentions("cellular respiration", "cell")

    def test_dictionary_keywords(self):
        assert extract_keywords("Parts of a plant cell", "Integrated Science") == ["cell"]

    def test_fallback_to_long_words(self):
        keywords = extract_keywords("Ancient storytelling around fires at night", "Mathematics")
        assert keywords == ["ancient", "storytelling", "around"]

    def test_default_keyword(self):
        assert extract_keywords("a to be", "Mathematics") == ["educational"]


# ═══════════════════════════════════════════════════════════════════════════════
# LOCAL IMAGE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestFolderNames:

    def test_normalize_grade(self):
        assert normalize_grade("Grade 7") == "grade-7"
        assert normalize_grade("PP 1") == "pp1"

    @pytest.mark.parametrize("subject, folder", [
        ("Integrated Science", "science"),
        ("Home Science", "home-science"),
        ("Mathematics", "mathematics"),
        ("Social Studies", "social-studies"),
        ("Kiswahili", "kiswahili"),
        ("Creative Arts", "creative-arts"),
    ])
    def test_normalize_subject(self, subject, folder):
        assert normalize_subject(subject) == folder


class TestFilenameCleaning:

    def test_clean_filename(self):
        assert clean_filename("01-describe-plant_cell.PNG") == "plant-cell"

    @pytest.mark.parametrize("filename", [
        "01-describe-plant_cell.PNG",
        "02-03-identify-parts.png.jpg",
        "**heart**-diagram.svg",
        "plant-cell-labeled-diagram.png",
        "",
    ])
    def test_clean_filename_idempotent(self, filename):
        once = clean_filename(filename)
        assert clean_filename(once) == once

    def test_suggest_filename(self):
        assert suggest_filename("Describe the parts of a plant cell") == "parts-plant-cell.jpg"

    def test_suggest_filename_fallback(self):
        assert suggest_filename("the of") == "diagram.jpg"

    def test_candidate_keeps_original_filename(self):
        candidate = make_candidate("01-Plant_Cell.PNG")
        assert candidate.filename == "01-Plant_Cell.PNG"
        assert candidate.normalized_tokens == frozenset({"plant", "cell"})


class TestLocalImageMatcher:
    """Test weighted token-overlap scoring and the threshold rule."""

    CONCEPT = "parts of a plant cell"

    def test_score(self):
        matcher = LocalImageMatcher()
        assert matcher.score(self.CONCEPT, make_candidate(PLANT_CELL_IMAGE)) == pytest.approx(50.0)

    def test_score_monotonic_in_overlap(self):
        matcher = LocalImageMatcher()
        scores = [
            matcher.score(self.CONCEPT, make_candidate(name))
            for name in ("volcano.png", "plant.png", "plant-cell.png", "parts-plant-cell.png")
        ]
        assert scores == sorted(scores)
        assert scores[0] == 0.0
        assert scores[-1] == pytest.approx(100.0)

    def test_match_at_threshold(self):
        matcher = LocalImageMatcher(threshold=50.0)
        result = matcher.find_best(self.CONCEPT, [make_candidate(PLANT_CELL_IMAGE)])
        assert result is not None
        assert result.candidate.filename == PLANT_CELL_IMAGE

    def test_no_match_below_threshold(self):
        matcher = LocalImageMatcher(threshold=60.0)
        assert matcher.find_best(self.CONCEPT, [make_candidate(PLANT_CELL_IMAGE)]) is None

    def test_default_threshold(self):
        matcher = LocalImageMatcher()
        assert matcher.find_best(self.CONCEPT, [make_candidate("plant.png")]) is None
        assert matcher.find_best(self.CONCEPT, [make_candidate("plant-cell.png")]) is not None

    def test_best_candidate_wins(self):
        matcher = LocalImageMatcher()
        result = matcher.find_best(self.CONCEPT, [
            make_candidate("plant-cell.png"),
            make_candidate("parts-plant-cell.png"),
        ])
        assert result.candidate.filename == "parts-plant-cell.png"

    def test_empty_candidates(self):
        assert LocalImageMatcher().find_best(self.CONCEPT, []) is None


class TestLocalImageLibrary:

    @pytest.mark.asyncio
    async def test_list_images(self, tmp_path):
        library = _make_library(tmp_path, files=("b.png", "a.jpg"))
        (tmp_path / "grade-7" / "science" / "notes.txt").write_text("x")
        assert await library.list_images("Grade 7", "Integrated Science") == ["a.jpg", "b.png"]

    @pytest.mark.asyncio
    async def test_missing_folder(self, tmp_path):
        library = LocalImageLibrary(root=str(tmp_path))
        assert await library.list_images("Grade 9", "Mathematics") == []

    @pytest.mark.asyncio
    async def test_cache_until_cleared(self, tmp_path):
        library = _make_library(tmp_path)
        assert len(await library.list_images("Grade 7", "Science")) == 1

        (tmp_path / "grade-7" / "science" / "heart-diagram.png").write_bytes(b"x")
        assert len(await library.list_images("Grade 7", "Science")) == 1

        library.clear_cache("Grade 7", "Science")
        assert len(await library.list_images("Grade 7", "Science")) == 2

    @pytest.mark.asyncio
    async def test_find_image(self, tmp_path):
        library = _make_library(tmp_path)
        result = await library.find_image("Parts of a plant cell", "Grade 7", "Science")
        assert result.filename == PLANT_CELL_IMAGE
        assert result.image_url == f"/api/diagrams/grade-7/science/{PLANT_CELL_IMAGE}"
        assert result.score == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_find_image_excludes_used(self, tmp_path):
        library = _make_library(tmp_path)
        url = library.image_url("Grade 7", "Science", PLANT_CELL_IMAGE)
        result = await library.find_image(
            "Parts of a plant cell", "Grade 7", "Science", exclude_urls={url}
        )
        assert result is None

    def test_image_url_quotes_filename(self, tmp_path):
        library = LocalImageLibrary(root=str(tmp_path), base_url="http://localhost:8000/")
        assert library.image_url("Grade 7", "Science", "plant cell.png") == (
            "http://localhost:8000/api/diagrams/grade-7/science/plant%20cell.png"
        )

    @pytest.mark.asyncio
    async def test_guidance(self, tmp_path):
        library = LocalImageLibrary(root=str(tmp_path))
        hint = await library.guidance("Describe the heart", "Grade 7", "Science")
        assert hint.reason == "No images in folder"
        assert hint.suggested_path == "diagrams/grade-7/science/"
        assert hint.suggested_filename == "heart.jpg"

    @pytest.mark.asyncio
    async def test_test_match_sorted(self, tmp_path):
        library = _make_library(tmp_path, files=("volcano.png", PLANT_CELL_IMAGE))
        scores = await library.test_match("parts of a plant cell", "Grade 7", "Science")
        assert scores[0] == (PLANT_CELL_IMAGE, 50.0)
        assert scores[1] == ("volcano.png", 0.0)


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRouter:

    def test_concrete_science(self):
        decision = route("Parts of a plant cell", "Integrated Science")
        assert decision.primary_source == ImageSource.CURATED
        assert decision.fallback_source == ImageSource.GENERATED
        assert decision.confidence == Confidence.HIGH

    def test_abstract_topic(self):
        decision = route("Importance of trade", "Social Studies")
        assert decision.primary_source == ImageSource.GENERATED
        assert decision.sources == [ImageSource.GENERATED]

    def test_geography(self):
        decision = route("Major rivers of Kenya", "Social Studies")
        assert decision.primary_source == ImageSource.CURATED
        assert decision.confidence == Confidence.MEDIUM

    def test_mathematics(self):
        assert route("Fractions on a number line", "Mathematics").primary_source == (
            ImageSource.GENERATED
        )

    def test_practical(self):
        decision = route("Planting maize seedlings", "Agriculture")
        assert decision.primary_source == ImageSource.GENERATED
        assert decision.fallback_source == ImageSource.CURATED

    @pytest.mark.parametrize("topic,subject", [
        ("Parts of speech in a sentence", "English"),
        ("Ngeli za nomino", "Kiswahili"),
    ])
    def test_language(self, topic, subject):
        decision = route(topic, subject)
        assert decision.primary_source == ImageSource.GENERATED
        assert decision.fallback_source == ImageSource.NONE
        assert decision.confidence == Confidence.HIGH
        assert "Language" in decision.reason

    @pytest.mark.parametrize("topic,subject", [
        ("Dribbling a ball", "Physical Education"),
        ("Drawing a still life", "Creative Arts and Sports"),
    ])
    def test_arts_and_physical_education(self, topic, subject):
        decision = route(topic, subject)
        assert decision.primary_source == ImageSource.GENERATED
        assert decision.fallback_source == ImageSource.CURATED
        assert decision.confidence == Confidence.MEDIUM

    def test_default(self):
        decision = route("Workshop safety", "Pre-technical Studies")
        assert decision.primary_source == ImageSource.CURATED
        assert decision.confidence == Confidence.LOW


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestSession:

    def test_registry_is_per_document(self):
        registry = UsedImageRegistry()
        registry.mark_used("doc-1", "http://x/a.png")
        assert registry.is_used("doc-1", "http://x/a.png")
        assert not registry.is_used("doc-2", "http://x/a.png")
        assert registry.used("doc-1") == frozenset({"http://x/a.png"})

    def test_reset_and_discard(self):
        session = DiagramSession()
        session.registry.mark_used("doc-1", "http://x/a.png")
        session.reset_document("doc-1")
        assert session.registry.used("doc-1") == frozenset()
        assert "doc-1" in session.registry
        session.discard_document("doc-1")
        assert "doc-1" not in session.registry

    def test_result_cache(self):
        session = DiagramSession()
        result = ImageResult(image_url="http://x/a.png", source="test")
        session.cache_result("key", result)
        assert session.cached_result("key") == result
        session.clear_cache()
        assert session.cached_result("key") is None


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE RESOLVER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRemoteHeuristics:

    def test_potential_diagram(self):
        assert is_potential_diagram("File:Plant cell structure.svg")
        assert not is_potential_diagram("File:Photo of a plant cell diagram.jpg")
        assert not is_potential_diagram("File:Sunflower field.jpg")

    def test_educational_diagram(self):
        assert is_educational_diagram("https://x/a.svg", "File:Anything.svg")
        assert is_educational_diagram("https://x/a.png", "File:Cell diagram.png")
        assert not is_educational_diagram("https://x/a.jpg", "File:Cell diagram.jpg")
        assert is_educational_diagram("https://x/a.jpg", "File:Cell labeled diagram.jpg")

    def test_simplify_topic(self):
        topic = "Educational diagram showing: parts of a plant cell white background"
        assert simplify_topic(topic) == "parts plant cell"

    def test_cache_key(self):
        assert cache_key("Integrated Science", "Plant Cell", "Grade 7") == (
            "integrated_science_plant_cell_grade_7"
        )

    def test_build_queries(self):
        queries = build_queries("parts of a plant cell", "Integrated Science", ["cell", "plant"])
        assert queries[0] == "cell diagram labeled"
        assert "cell plant diagram" in queries
        assert "science diagram cell" in queries
        assert len(queries) == len(set(queries))


class TestRemoteDiagramResolver:
    """Test search, uniqueness and failure handling with a mocked API."""

    TITLES = ["File:Plant cell diagram.svg", "File:Plant cell structure diagram.svg"]

    def _resolver(self, titles=None) -> RemoteDiagramResolver:
        resolver = RemoteDiagramResolver(request_delay=0)
        resolver._get_json = AsyncMock(side_effect=_fake_commons(titles or self.TITLES))
        return resolver

    async def _resolve(self, resolver, session, document_id="doc-1"):
        return await resolver.resolve(
            topic="parts of a plant cell",
            subject="Integrated Science",
            grade="Grade 7",
            keywords=None,
            document_id=document_id,
            session=session,
        )

    @pytest.mark.asyncio
    async def test_resolve(self):
        session = DiagramSession()
        result = await self._resolve(self._resolver(), session)
        assert result.image_url.endswith("Plant_cell_diagram.svg")
        assert result.source == "Wikimedia Commons"
        assert session.registry.is_used("doc-1", result.image_url)

    @pytest.mark.asyncio
    async def test_never_repeats_within_document(self):
        resolver = self._resolver()
        session = DiagramSession()

        first = await self._resolve(resolver, session)
        second = await self._resolve(resolver, session)
        third = await self._resolve(resolver, session)

        assert first.image_url != second.image_url
        assert third is None

    @pytest.mark.asyncio
    async def test_cache_reused_across_documents(self):
        resolver = self._resolver()
        session = DiagramSession()

        first = await self._resolve(resolver, session, "doc-1")
        calls = resolver._get_json.await_count
        other = await self._resolve(resolver, session, "doc-2")

        assert other.image_url == first.image_url
        assert resolver._get_json.await_count == calls

    @pytest.mark.asyncio
    async def test_provider_errors_are_not_raised(self):
        resolver = RemoteDiagramResolver(request_delay=0, max_queries=3)
        resolver._get_json = AsyncMock(side_effect=ProviderError(503, "unavailable"))
        result = await self._resolve(resolver, DiagramSession())
        assert result is None
        assert resolver._get_json.await_count == 3

    @pytest.mark.asyncio
    async def test_oversized_files_skipped(self):
        resolver = self._resolver()
        resolver.max_file_size = 1024
        assert await self._resolve(resolver, DiagramSession()) is None

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        async with RemoteDiagramResolver(request_delay=0) as resolver:
            pass
        assert resolver._session is None


class TestRemoteHttp:
    """Test the real request path against a fake HTTP session."""

    SVG_URL = "https://upload.example.org/Plant_cell_diagram.svg"

    @pytest.mark.asyncio
    async def test_consecutive_requests_are_spaced(self):
        resolver = RemoteDiagramResolver(request_delay=2.0)
        resolver._session = _FakeHttp([
            _FakeResponse(_search_payload("File:Plant cell diagram.svg")),
            _FakeResponse(_search_payload("File:Plant cell diagram.svg")),
        ])

        with patch("cbcdocs.remote_resolver.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await resolver.search_titles("plant cell")
            await resolver.search_titles("plant cell")

        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(2.0, abs=0.5)
        assert resolver.request_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_serialized(self):
        resolver = RemoteDiagramResolver(request_delay=2.0)
        resolver._session = _FakeHttp([
            _FakeResponse(_search_payload("File:A diagram.svg")),
            _FakeResponse(_search_payload("File:B diagram.svg")),
        ])

        with patch("cbcdocs.remote_resolver.asyncio.sleep", new_callable=AsyncMock) as sleep:
            results = await asyncio.gather(
                resolver.search_titles("a"),
                resolver.search_titles("b"),
            )

        assert sorted(t for titles in results for t in titles) == [
            "File:A diagram.svg", "File:B diagram.svg",
        ]
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_200_raises_provider_error(self):
        resolver = RemoteDiagramResolver(request_delay=0)
        resolver._session = _FakeHttp([_FakeResponse(status=503, body="Service Unavailable")])

        with pytest.raises(ProviderError) as exc_info:
            await resolver.search_titles("plant cell")

        assert exc_info.value.status_code == 503
        assert "Service Unavailable" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_failures_advance_to_next_query(self):
        resolver = RemoteDiagramResolver(request_delay=0)
        http = _FakeHttp([
            aiohttp.ClientConnectionError("connection reset"),
            asyncio.TimeoutError(),
            _FakeResponse(status=503, body="busy"),
            _FakeResponse(body="<html>not json</html>"),
            _FakeResponse(_search_payload("File:Plant cell diagram.svg")),
            _FakeResponse(_imageinfo_payload(self.SVG_URL)),
        ])
        resolver._session = http
        session = DiagramSession()

        result = await resolver.resolve(
            topic="parts of a plant cell",
            subject="Integrated Science",
            grade="Grade 7",
            keywords=None,
            document_id="doc-1",
            session=session,
        )

        assert result.image_url == self.SVG_URL
        assert session.registry.is_used("doc-1", self.SVG_URL)
        searched = [r["srsearch"] for r in http.requests if "srsearch" in r]
        assert len(searched) == 5
        assert len(set(searched)) == 5
        assert resolver.request_count == 6

    @pytest.mark.asyncio
    async def test_all_queries_failing_returns_none(self):
        resolver = RemoteDiagramResolver(request_delay=0, max_queries=2)
        resolver._session = _FakeHttp([
            aiohttp.ClientConnectionError("down"),
            _FakeResponse(status=500, body="error"),
        ])

        result = await resolver.resolve(
            topic="parts of a plant cell",
            subject="Integrated Science",
            grade="Grade 7",
            keywords=None,
            document_id="doc-1",
            session=DiagramSession(),
        )

        assert result is None
        assert resolver.request_count == 2


# ═══════════════════════════════════════════════════════════════════════════════
# CONCEPT TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestConcepts:

    def test_visual_potential(self):
        assert score_visual_potential("Parts of a plant cell") == 100
        assert score_visual_potential("Discuss opinions on trade") == 30
        assert score_visual_potential("Read aloud") == 50

    def test_concepts_from_table(self):
        table = ParsedTable(
            headers=list(CONCEPT_BREAKDOWN_HEADERS),
            rows=[
                ["Term 1", "Week 1", "Matter", "Mixtures", "Separate a mixture"],
                ["Term 1", "Week 2", "Matter", "Mixtures", ""],
            ],
        )
        concepts = concepts_from_table(table)
        assert len(concepts) == 1
        assert concepts[0].week == "Week 1"

    def test_select_prefers_visual_and_keeps_order(self):
        concepts = [
            Concept(label="Discuss opinions on trade", week="Week 1", index=0),
            Concept(label="Parts of a plant cell", week="Week 2", index=1),
            Concept(label="The water cycle process", week="Week 3", index=2),
        ]
        selected = select_concepts(concepts, 2)
        assert [c.index for c in selected] == [1, 2]

    def test_select_spreads_weeks_first(self):
        concepts = [
            Concept(label="Parts of a plant cell", week="Week 1", index=0),
            Concept(label="Parts of an animal cell", week="Week 1", index=1),
            Concept(label="Read aloud", week="Week 2", index=2),
            Concept(label="The water cycle process", week="Week 3", index=3),
        ]
        selected = select_concepts(concepts, 2)
        assert [c.week for c in selected] == ["Week 1", "Week 3"]

    def test_select_limit_zero(self):
        assert select_concepts([Concept(label="x")], 0) == []

    def test_caption(self):
        concept = Concept(label="describe the water cycle", week="Week 3")
        assert format_concept_caption(concept, 2) == "Figure 2: The water cycle (Week 3)"
        assert format_concept_caption(Concept(label="Volcanoes"), 1) == "Figure 1: Volcanoes"


# ═══════════════════════════════════════════════════════════════════════════════
# ORCHESTRATOR TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRenderFigure:

    def test_local_annotation(self):
        result = ImageResult(image_url="/a.png", source="Local Library", score=62.4)
        markdown = render_figure(result, "Figure 1: Cell", alt="Cell")
        assert "![Cell](/a.png)" in markdown
        assert "*Figure 1: Cell*" in markdown
        assert "*Auto-matched with 62% similarity*" in markdown

    def test_remote_annotation(self):
        result = ImageResult(
            image_url="https://x/a.svg",
            source="Wikimedia Commons",
            license="CC-BY-SA",
            attribution="Wikimedia Commons: Cell",
        )
        markdown = render_figure(result, "Figure 1: Cell", alt="[Cell]")
        assert "![(Cell)](https://x/a.svg)" in markdown
        assert "*Source: Wikimedia Commons: Cell (CC-BY-SA)*" in markdown


class TestDiagramPlacementOrchestrator:
    """Test end-to-end placeholder substitution."""

    CONTENT = "# Cells\n\nIntro text.\n\n{diagram}\n\nClosing text."

    @pytest.mark.asyncio
    async def test_local_match_replaces_placeholder(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path))
        span = '[DIAGRAM: {"description":"parts of a plant cell"}]'
        content = self.CONTENT.format(diagram=span)

        result = await orchestrator.place(content, None, _make_context())

        assert result.content.count(PLANT_CELL_IMAGE) == 1
        assert span not in result.content
        assert "[DIAGRAM" not in result.content
        assert "*Figure 1: Parts of a plant cell*" in result.content
        assert result.stats.successful == 1
        assert result.stats.average_match_score == pytest.approx(50.0)
        assert result.diagrams[0].figure_number == 1

    @pytest.mark.asyncio
    async def test_unclosed_placeholder_keeps_surrounding_text(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path))
        content = (
            'Intro. [DIAGRAM: {"description": "broken"] KEEP THIS PARAGRAPH. '
            '[DIAGRAM: {"description": "parts of a plant cell"}] End.'
        )

        result = await orchestrator.place(content, None, _make_context())

        assert "KEEP THIS PARAGRAPH." in result.content
        assert result.content.count(PLANT_CELL_IMAGE) == 1
        assert "[DIAGRAM" not in result.content
        assert result.stats.successful == 1
        assert result.stats.removed_leftovers == 1

    @pytest.mark.asyncio
    async def test_image_used_once_per_document(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path))
        content = "\n\n".join([
            _placeholder("parts of a plant cell"),
            _placeholder("plant cell structure"),
        ])

        result = await orchestrator.place(content, None, _make_context())

        assert result.content.count(PLANT_CELL_IMAGE) == 1
        assert result.stats.successful == 1
        assert result.stats.failed == 1
        assert result.guidance[0].suggested_filename == "plant-cell-structure.jpg"

    @pytest.mark.asyncio
    async def test_duplicates_and_limit(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path), max_diagrams=2)
        content = "\n".join([
            _placeholder("parts of a plant cell"),
            _placeholder("Parts of a plant cell "),
            _placeholder("the heart"),
        ])

        result = await orchestrator.place(content, None, _make_context())

        assert result.stats.total == 3
        assert result.stats.attempted == 2
        assert result.stats.skipped == 1
        assert result.stats.removed_leftovers == 1
        assert "[DIAGRAM" not in result.content

    @pytest.mark.asyncio
    async def test_malformed_placeholder_removed(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path))
        result = await orchestrator.place(
            "Before [DIAGRAM: {not json}] after", None, _make_context()
        )
        assert result.content == "Before  after"
        assert result.stats.total == 0
        assert result.stats.removed_leftovers == 1

    @pytest.mark.asyncio
    async def test_caption_uses_concept(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path))
        concepts = [
            Concept(label="Volcanoes", week="Week 1", index=0),
            Concept(label="Identify parts of a plant cell", week="Week 4", index=1),
        ]
        content = _placeholder("parts of a plant cell", conceptNumber="2")

        result = await orchestrator.place(content, concepts, _make_context())

        assert result.diagrams[0].caption == "Figure 1: Parts of a plant cell (Week 4)"
        assert result.diagrams[0].week == "Week 4"

    @pytest.mark.asyncio
    async def test_remote_fallback(self, tmp_path):
        remote = ImageResult(
            image_url="https://upload.example.org/Heart_diagram.svg",
            source="Wikimedia Commons",
            license="CC-BY-SA / Public Domain",
            attribution="Wikimedia Commons: File:Heart diagram.svg",
        )
        resolver = MagicMock()
        resolver.resolve = AsyncMock(return_value=remote)
        orchestrator = DiagramPlacementOrchestrator(_make_library(tmp_path), resolver=resolver)

        result = await orchestrator.place(_placeholder("the human heart"), None, _make_context())

        resolver.resolve.assert_awaited_once()
        assert "Heart_diagram.svg" in result.content
        assert result.diagrams[0].source == "Wikimedia Commons"
        assert result.guidance == []

    @pytest.mark.asyncio
    async def test_generator_used_when_routed(self, tmp_path):
        generated = ImageResult(image_url="/generated/fractions.png", source="Generated")
        generator = AsyncMock(return_value=generated)
        resolver = MagicMock()
        resolver.resolve = AsyncMock(return_value=None)
        orchestrator = DiagramPlacementOrchestrator(
            _make_library(tmp_path),
            resolver=resolver,
            generator=generator,
        )

        result = await orchestrator.place(
            _placeholder("Fractions on a number line"),
            None,
            _make_context(subject="Mathematics"),
        )

        generator.assert_awaited_once()
        resolver.resolve.assert_not_awaited()
        assert "/generated/fractions.png" in result.content

    @pytest.mark.asyncio
    async def test_no_match_removes_placeholder(self, tmp_path):
        orchestrator = DiagramPlacementOrchestrator(LocalImageLibrary(root=str(tmp_path)))
        result = await orchestrator.place(
            "Text\n\n" + _placeholder("the human heart") + "\n\nMore",
            None,
            _make_context(),
        )
        assert result.content == "Text\n\nMore"
        assert result.stats.failed == 1
        assert result.guidance[0].reason == "No images in folder"


class TestDocumentEngineDiagrams:

    @pytest.mark.asyncio
    async def test_place_diagrams(self, tmp_path):
        _make_library(tmp_path)
        config = PipelineConfig(
            diagrams_root=str(tmp_path),
            use_remote=False,
            log_level="WARNING",
        )
        async with DocumentEngine(config) as engine:
            content = "Intro\n\n" + _placeholder("parts of a plant cell")
            first = await engine.place_diagrams(content, "doc-1", "Grade 7", "Science")
            again = await engine.place_diagrams(content, "doc-1", "Grade 7", "Science")

        assert first.stats.successful == 1
        # Regeneration resets the document's used images
        assert again.stats.successful == 1

    @pytest.mark.asyncio
    async def test_registry_kept_without_reset(self, tmp_path):
        _make_library(tmp_path)
        config = PipelineConfig(diagrams_root=str(tmp_path), use_remote=False)
        engine = DocumentEngine(config)
        content = _placeholder("parts of a plant cell")

        await engine.place_diagrams(content, "doc-1", "Grade 7", "Science")
        again = await engine.place_diagrams(
            content, "doc-1", "Grade 7", "Science", reset=False
        )

        assert again.stats.successful == 0
        await engine.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
