"""Build, cache, and operate versioned daemon binaries for integration testing."""

__version__ = "0.3.0"
