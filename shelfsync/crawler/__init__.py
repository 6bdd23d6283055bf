"""Bounded, polite crawling of the remote catalog."""
