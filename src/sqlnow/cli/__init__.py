"""SQLNow command-line interface."""
