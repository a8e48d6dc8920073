"""swapwatch: watch a hardware swap subreddit and route matching deals to Telegram."""

__version__ = "1.0.0"
