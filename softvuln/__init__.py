"""
softvuln - software inventory vulnerability tracking against the NVD feeds
"""

__version__ = "1.0.0"
