"""Poll-driven instance spawning.

- **config**: Poll config discovery and validation (YAML / JSON files)
- **mapping**: Item field mapping, filters and Jinja2 template rendering
- **adapters**: Per-source query building and response parsing
- **bridge**: One-shot MCP calls (stdio / SSE / streamable HTTP) and command fetches
- **errors**: Error taxonomy, retry policy, backoff and classification
- **loop**: The poll cycle (fetch -> gate -> launch -> record -> cleanup)
"""
