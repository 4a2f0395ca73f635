"""
Sloth Proxy: render web pages in a scripted browser, extract articles
with per-site CSS selector schemas and republish them as RSS.
"""

__version__ = "2.0.0"
