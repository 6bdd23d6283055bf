"""Normalization of raw extracted fields into catalog records."""
