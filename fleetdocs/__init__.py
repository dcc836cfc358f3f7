"""
FleetDocs package.

This package tracks compliance documents of fleet vehicles and personnel
and classifies them by expiry.
"""
