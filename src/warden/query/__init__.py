"""Filter evaluation, filter algebra and query helpers."""
