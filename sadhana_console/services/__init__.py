"""Service layer: document store, media, content tree and projections."""
