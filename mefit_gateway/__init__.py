"""
MeFit Gateway - request sanitization gateway for the MeFit API
"""

__version__ = "1.0.0"
