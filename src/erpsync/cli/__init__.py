"""Command-line interface for the ERP sync core."""
