"""
Routes package for the Stefna backend.
Contains Flask Blueprints for the /api namespace.
"""

__all__ = [
    "register_blueprints",
]


def _print_route_map(app):
    """Print all registered /api/* routes at startup for debugging."""
    api_routes = []
    for rule in app.url_map.iter_rules():
        if rule.rule.startswith("/api"):
            methods = ",".join(sorted(m for m in rule.methods if m not in ("HEAD", "OPTIONS")))
            api_routes.append(f"  {methods:8s} {rule.rule}")

    api_routes.sort(key=lambda x: x.split()[-1])  # Sort by path

    print("[ROUTES] Registered API endpoints:")
    for route in api_routes:
        print(route)
    print(f"[ROUTES] Total: {len(api_routes)} endpoints")


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    from stefna.routes.health import bp as health_bp
    from stefna.routes.generation import bp as generation_bp
    from stefna.routes.credits import bp as credits_bp
    from stefna.routes.media import bp as media_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(generation_bp, url_prefix="/api")
    app.register_blueprint(credits_bp, url_prefix="/api/credits")
    app.register_blueprint(media_bp, url_prefix="/api")

    _print_route_map(app)
