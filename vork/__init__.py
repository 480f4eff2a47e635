"""vork: an interactive coding assistant for local LLM servers."""
