"""
Feature modules: catalog (departments and services), service_requests (lifecycle,
side effects, citizen and officer routes) and notifications.

Each module owns its models, service layer and blueprints; identity, RBAC, audit,
storage and the DB session come from ``app.eservices``.
"""
