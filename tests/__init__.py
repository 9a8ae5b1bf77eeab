"""AYUSH Terminology Service test suite."""
