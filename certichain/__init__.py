"""CertiChain: certificate issuance with hash anchoring and public verification."""

__version__ = "0.1.0"
