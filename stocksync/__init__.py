"""StockSync — reconciles a remote inventory/ERP catalog into a local store."""

__version__ = "1.0.0"
