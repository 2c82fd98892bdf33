"""lectern - streaming conversations about documents."""

__version__ = "0.1.0"
