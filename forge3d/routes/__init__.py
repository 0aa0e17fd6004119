"""
Routes package for the Forge3D backend.
Contains Flask Blueprints for the /api namespace.
"""

__all__ = [
    "register_blueprints",
]


def _print_route_map(app):
    """Print all registered /api/* routes at startup."""
    api_routes = []
    for rule in app.url_map.iter_rules():
        if rule.rule.startswith("/api"):
            methods = ",".join(sorted(m for m in rule.methods if m not in ("HEAD", "OPTIONS")))
            api_routes.append(f"  {methods:8s} {rule.rule}")

    api_routes.sort(key=lambda x: x.split()[-1])
    print("[ROUTES] Registered API endpoints:")
    for route in api_routes:
        print(route)
    print(f"[ROUTES] Total: {len(api_routes)} endpoints")


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    from forge3d.routes.admin import bp as admin_bp
    from forge3d.routes.credits import bp as credits_bp
    from forge3d.routes.generations import bp as generations_bp
    from forge3d.routes.health import bp as health_bp
    from forge3d.routes.payments import bp as payments_bp
    from forge3d.routes.projects import bp as projects_bp
    from forge3d.routes.transactions import bp as transactions_bp
    from forge3d.routes.webhooks import bp as webhooks_bp
    from forge3d.routes.workflows import bp as workflows_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(credits_bp, url_prefix="/api/credits")
    app.register_blueprint(transactions_bp, url_prefix="/api/transactions")
    app.register_blueprint(workflows_bp, url_prefix="/api")
    app.register_blueprint(projects_bp, url_prefix="/api/projects")
    app.register_blueprint(generations_bp, url_prefix="/api/generations")
    app.register_blueprint(payments_bp, url_prefix="/api/payments")
    app.register_blueprint(webhooks_bp, url_prefix="/api/webhooks")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")

    _print_route_map(app)
