"""Core domain package for swapwatch.

Core contains matching, routing cache, presentation building and the batch
pipeline without any Reddit, Gemini, Telegram or storage-specific code,
keeping the business logic portable.
"""
