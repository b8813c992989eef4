"""OneMolt: molt keys bound to unique humans, with an anti-Sybil forum."""

__version__ = "1.0.0"
