"""Scrape-job engine and API for fishing shop and report research."""

__version__ = "0.1.0"
