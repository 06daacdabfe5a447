"""PPC Pal: Amazon Ads sync, bid optimization and automation backend."""

__version__ = '1.0.0'
