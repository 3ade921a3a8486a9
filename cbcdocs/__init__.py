"""
CBC Document Engine
===================
Turns generated curriculum content into structured tables and illustrated
markdown.

Architecture:
    - Table Parser: Recovers canonical rows from free-form generated text
    - Schema Reconciler: Rebuilds scheme-of-work columns from source data
    - Table Validator: Reports empty cells, leftovers and duplicate lessons
    - Placeholder Scanner: Finds `[DIAGRAM: {...}]` requests in content
    - Local Image Library: Matches concepts to curated diagram folders
    - Remote Resolver: Searches an open image repository as a fallback
    - Placement Orchestrator: Substitutes figures and numbers them

Version: 1.0.0
"""

__version__ = "1.0.0"
