from flask import Blueprint
from Controllers.adminController import (
    dashboard, list_users, update_user, delete_user,
    audit_logs, log_summary, export_data
)

admin_routes = Blueprint("admin_routes", __name__, url_prefix="/api/v1/admin")

admin_routes.add_url_rule("/dashboard", view_func=dashboard, methods=["GET"])

# Users
admin_routes.add_url_rule("/users", view_func=list_users, methods=["GET"])
admin_routes.add_url_rule("/users/<user_id>", view_func=update_user, methods=["PUT"])
admin_routes.add_url_rule("/users/<user_id>", view_func=delete_user, methods=["DELETE"])

# Audit trail and server logs
admin_routes.add_url_rule("/audit-logs", view_func=audit_logs, methods=["GET"])
admin_routes.add_url_rule("/logs/summary", view_func=log_summary, methods=["GET"])
admin_routes.add_url_rule("/export", view_func=export_data, methods=["GET"])
