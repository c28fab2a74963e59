"""
HerbTrace - tamper-evident provenance for herbal supply chains.
"""

__version__ = "0.1.0"
