"""fp-installer - Xiaomi fingerprint scanner driver installer with fallback strategies."""

__version__ = "0.1.0"
