"""reqchain - template and execute HTTP and OAuth request steps."""

__version__ = "0.1.0"
