"""
Division school directory scraper.

This package crawls a paginated school directory one division at a time,
with a change-detection cache that skips divisions whose upstream content
is unchanged. The Orchestrator in ``schoolyard.orchestrator`` is the entry
point; the CLI and the FastAPI app are thin shims over it.
"""
