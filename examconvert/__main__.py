"""
Module entry point for: python -m examconvert

Allows running the converter directly as a module:
    python -m examconvert convert <files...> --exam upsc
    python -m examconvert classify <file> --exam upsc
    python -m examconvert exams
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
