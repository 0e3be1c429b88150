"""
Gatekeeper: request admission, computation caching and fan-out logging
for the CryptInvest API.
"""

__version__ = "0.1.0"
