from flask import Blueprint
from Controllers.verificationController import (
    start_verification, verify_id, verify_questions, verify_otp,
    upload_documents, security_verify, pending_reviews, get_verification
)

verification_routes = Blueprint('verification_routes', __name__, url_prefix='/api/v1/verifications')

verification_routes.add_url_rule('/start', view_func=start_verification, methods=['POST'])
verification_routes.add_url_rule('/verify-id', view_func=verify_id, methods=['POST'])
verification_routes.add_url_rule('/verify-questions', view_func=verify_questions, methods=['POST'])
verification_routes.add_url_rule('/verify-otp', view_func=verify_otp, methods=['POST'])
verification_routes.add_url_rule('/upload-documents', view_func=upload_documents, methods=['POST'])

# Security desk
verification_routes.add_url_rule('/security-verify', view_func=security_verify, methods=['POST'])
verification_routes.add_url_rule('/pending-reviews', view_func=pending_reviews, methods=['GET'])

verification_routes.add_url_rule('/<verification_id>', view_func=get_verification, methods=['GET'])
