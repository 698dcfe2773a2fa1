"""
Place Harvester

Drives a browser tab through a list of place pages, captures the data each
page loads and exports the extracted business listings.
"""

__version__ = "0.1.0"
