"""Built-in scraper implementations."""
