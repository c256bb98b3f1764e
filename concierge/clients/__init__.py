"""Vendor adapters. Vendor payload shapes stay inside this package."""
