"""Adapters binding the core ports to Reddit, Gemini, SQLite and Telegram."""
