"""Storage client contract, proxy layering and the in-memory reference client."""
