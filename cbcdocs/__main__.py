"""
Module entry point for: python -m cbcdocs

Allows running the engine directly as a module:
    python -m cbcdocs parse <text_path> [options]
    python -m cbcdocs place <content_path> [options]
    python -m cbcdocs match <concept> [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
