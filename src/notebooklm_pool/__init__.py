"""NotebookLM Pool - MCP server that answers questions from NotebookLM notebooks through a pool of Google accounts."""

__version__ = "0.1.0"
