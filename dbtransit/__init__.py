"""
dbtransit: copy tabular data between databases, files, object stores and
warehouses, converting the schema on the way.
"""

__version__ = "0.1.0"
