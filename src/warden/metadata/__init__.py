"""Model metadata and schema loading."""
