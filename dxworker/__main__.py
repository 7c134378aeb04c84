"""Allow ``python -m dxworker``."""

from dxworker.cli.commands import app

if __name__ == "__main__":
    app()
