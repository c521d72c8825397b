"""Module entrypoint for `python -m cloudreconcile`."""

try:
    from .cli import run
except ImportError:
    # Executed as a script path rather than as part of the package.
    from cloudreconcile.cli import run


if __name__ == "__main__":
    raise SystemExit(run())
