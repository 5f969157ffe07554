"""Device tree building blocks: live trees, source positions, source and YAML output."""

__version__ = "1.7.0"

__all__ = ["livetree", "srcpos", "treesource", "util", "yamltree"]