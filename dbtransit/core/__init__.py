"""
dbtransit core: locators, the portable schema, the driver registry and
the copy runner.
"""
