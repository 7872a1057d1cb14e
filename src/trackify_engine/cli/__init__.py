"""Command-line interface for the Trackify engine"""
