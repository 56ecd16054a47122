"""catalog_mirror -- mirror an external procedure/case catalog locally."""

__version__ = "0.3.0"
