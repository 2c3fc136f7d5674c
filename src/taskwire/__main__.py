"""taskwire CLI entry point."""

from taskwire.cli import app

if __name__ == "__main__":
    app()
