"""
gdl - taxon-scoped genome assembly downloader.

Resolves a taxon to its descendant set, filters the NCBI assembly catalog
and retrieves the matching assemblies in parallel.
"""

__version__ = "0.3.0"
