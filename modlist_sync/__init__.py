"""Keep a mods directory in sync with a shareable modlist manifest."""

__version__ = "0.1.0"
