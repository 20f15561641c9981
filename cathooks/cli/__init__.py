"""Command-line entry points. Each prints one JSON object on stdout."""
