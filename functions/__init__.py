"""HTTP function modules; each exposes ``setup(app)`` to register its routes."""
