"""
visual_matcher — Catalog embedding cache and visual similarity ranking.

Finds the catalog products that look most like a query image. Catalog
vectors come from a local cache, a precomputed remote bundle, or are
computed on demand under bounded concurrency; ranking is cosine
similarity with a same-class boost and composable filters.

Modules:
    engine          MatchEngine, the entry point
    coordinator     Bounded-concurrency catalog embedding
    ranking         Pure similarity ranking with filters
    vector_index    FAISS inner-product scoring
    sources         Ordered vector sources, first present wins
    cache_store     Versioned local vector/label cache
    remote_loader   Precomputed bundle fetch and shape decoding
    codec           Vector <-> string encoding
    query           Live query state with supersession
    embedders       Embedding and classification collaborators
    image_loader    URL / file / bytes image loading
    preprocessing   Image normalization before embedding
    bundle_builder  Precomputed bundle export
    models          Value objects and catalog tables
    errors          Error taxonomy
"""

__version__ = "1.0.0"
