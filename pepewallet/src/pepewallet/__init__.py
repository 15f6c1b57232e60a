"""
pepewallet - Key derivation, encryption and transaction engine.
"""

__version__ = "0.1.0"
