"""Multi-language code execution engine."""
