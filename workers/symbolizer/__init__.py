"""
symbolizer — address and symbol-name resolution for execution profiles.

Turns sampled instruction addresses into (function, file, line, column)
frames using on-disk binaries and/or a remote symbol service, then
rewrites mangled function names into readable ones.
"""

__version__ = "0.1.0"
SYMBOLIZER_VERSION = "v0"
PACKAGE_NAME = "symbolizer"
SCHEMA_VERSION = "0.1"
