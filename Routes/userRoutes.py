from flask import Blueprint
from Controllers.userController import get_profile, update_profile, change_password, delete_account

user_routes = Blueprint('user_routes', __name__, url_prefix='/api/v1/users')

user_routes.add_url_rule('/profile', view_func=get_profile, methods=['GET'])
user_routes.add_url_rule('/profile', view_func=update_profile, methods=['PUT'])
user_routes.add_url_rule('/password', view_func=change_password, methods=['PUT'])
user_routes.add_url_rule('/account', view_func=delete_account, methods=['DELETE'])
