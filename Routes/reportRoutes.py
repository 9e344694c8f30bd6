from flask import Blueprint
from Controllers.idReportController import (
    create_report, search_reports, my_reports, get_stats,
    get_report, update_report, delete_report
)

report_routes = Blueprint('report_routes', __name__, url_prefix='/api/v1/reports')

# Fixed paths first so they are not taken for a report reference
report_routes.add_url_rule('', view_func=create_report, methods=['POST'])
report_routes.add_url_rule('/search', view_func=search_reports, methods=['GET'])
report_routes.add_url_rule('/mine', view_func=my_reports, methods=['GET'])
report_routes.add_url_rule('/stats', view_func=get_stats, methods=['GET'])

report_routes.add_url_rule('/<report_ref>', view_func=get_report, methods=['GET'])
report_routes.add_url_rule('/<report_ref>', view_func=update_report, methods=['PUT'])
report_routes.add_url_rule('/<report_ref>', view_func=delete_report, methods=['DELETE'])
