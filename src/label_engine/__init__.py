"""Label Engine: typed attributes, labels, rules and suggestions for catalog entities."""

__version__ = "0.1.0"
