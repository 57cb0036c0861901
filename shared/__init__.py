"""Shared configuration, logging, LLM and persistence utilities."""
