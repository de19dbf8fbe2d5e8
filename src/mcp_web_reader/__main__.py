"""Entry point for `python -m mcp_web_reader`."""

from mcp_web_reader.server import main

if __name__ == "__main__":
    main()
