"""Prompt construction for llm_toolloop."""
