"""Maintenance jobs run outside the scrape cycle."""
