"""Packaging: canonical archives, staging and the content security filter."""
