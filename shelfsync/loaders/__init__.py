"""Exports and external mirrors of the catalog."""
