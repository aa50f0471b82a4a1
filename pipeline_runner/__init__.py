"""Document pipeline runner: LLM extraction, scoring and routing over PDF pages."""
