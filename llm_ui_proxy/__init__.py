"""
LLM UI Proxy.

Serves a browser game UI and forwards its model calls to a local
inference server through a single-target reverse proxy.
"""

__version__ = "0.1.0"
