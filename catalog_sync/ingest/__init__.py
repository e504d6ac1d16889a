"""CSV reading, row normalization and batch planning."""
