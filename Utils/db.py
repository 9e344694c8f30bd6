import logging
from mongoengine import connect
from dotenv import load_dotenv
import os
from urllib.parse import urlparse

load_dotenv()

logger = logging.getLogger(__name__)


def ensure_indexes():
    """Create indexes up front; the claim invariants rely on them."""
    from Models.auditLogModel import AuditLog
    from Models.idReportModel import IDReport
    from Models.userModel import User
    from Models.verificationModel import Verification

    for document in (User, IDReport, Verification, AuditLog):
        document.ensure_indexes()


def init_db(mongo_uri=None, **connect_kwargs):
    mongo_uri = mongo_uri or os.getenv("MONGODB_URI", "mongodb://localhost:27017/pataid")

    # Auto-detect DB name from URI
    parsed = urlparse(mongo_uri)
    db_name = (parsed.path or "").lstrip("/") or "pataid"

    try:
        connect(
            db=db_name,
            host=mongo_uri,
            alias="default",
            **connect_kwargs
        )
        ensure_indexes()
        logger.info(f"✅ MongoDB connected successfully → {db_name}")
    except Exception as e:
        logger.error(f"❌ MongoDB connection error: {e}")
        raise
