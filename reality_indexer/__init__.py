"""
Reality module governance indexer.

Mirrors proposals routed through a Zodiac Reality module, their Reality.eth
questions and answer histories, and derives executability and claimable bonds.
"""

__version__ = "0.1.0"
