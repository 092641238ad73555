"""
SERP Harvester.

Multi-page search-engine result collection with CAPTCHA recovery and
proxy rotation.
"""

__version__ = "0.1.0"
