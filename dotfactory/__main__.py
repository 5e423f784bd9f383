"""Entry point for `python3 -m dotfactory`."""

from dotfactory.cli import app


def main() -> None:
    """CLI entry point for the `dotfactory` script."""
    app()


if __name__ == "__main__":
    main()
