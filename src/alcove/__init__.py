"""Local streaming chat core with MCP tool calling."""

from importlib.metadata import version as _v

try:
    __version__ = _v("alcove")
except Exception:
    __version__ = "0.0.0"
