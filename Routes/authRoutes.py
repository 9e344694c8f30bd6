from flask import Blueprint
from Controllers.authController import login, register, logout, get_me, update_preferences

auth_routes = Blueprint('auth_routes', __name__, url_prefix='/api/v1/auth')

auth_routes.add_url_rule('/register', view_func=register, methods=['POST'])
auth_routes.add_url_rule('/login', view_func=login, methods=['POST'])
auth_routes.add_url_rule('/logout', view_func=logout, methods=['POST'])
auth_routes.add_url_rule('/me', view_func=get_me, methods=['GET'])
auth_routes.add_url_rule('/preferences', view_func=update_preferences, methods=['PUT'])
