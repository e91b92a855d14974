"""Allow `python -m mcp_ipc_bridge` to invoke the CLI entry-point."""

from .cli import app


def main() -> None:
    app(prog_name="mcp-ipc-bridge")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
