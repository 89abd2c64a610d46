"""LLM-driven security and quality review for pull requests."""
