"""Entry point for ``python -m isobatch``."""

from isobatch.cli.app import app

if __name__ == "__main__":
    app()
