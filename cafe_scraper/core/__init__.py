"""Storage, identifiers, errors and secrets shared by every engine module."""
