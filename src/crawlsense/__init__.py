"""Detection of AI crawlers, search engines and browser-mimicking agents."""

__version__ = "0.1.0"
