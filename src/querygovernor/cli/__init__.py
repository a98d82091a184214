"""Command line interface for QueryGovernor."""
