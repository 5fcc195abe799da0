"""Worker pool, source-sync handling and the query-side docs service."""
