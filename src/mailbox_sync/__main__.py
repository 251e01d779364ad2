"""Console entrypoint for `mailbox-sync`."""

from __future__ import annotations

from mailbox_sync.cli.app import app


def main() -> int:
    """Run the Typer CLI application.

    Returns:
        Process exit code.
    """
    app(prog_name="mailbox-sync")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
