"""Scraping: providers, site adapters, structured data extraction, text normalization."""
