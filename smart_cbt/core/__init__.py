"""Configuration, domain records, stores and the catalog."""
