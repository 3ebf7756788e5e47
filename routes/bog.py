"""Bank of Georgia callback endpoint (server-to-server)."""

import logging

from flask import Blueprint, jsonify, request

from errors import SignatureError, ValidationError
from extensions import csrf
from services.billing import get_webhook_ingestor
from utils import api_error, api_success

logger = logging.getLogger(__name__)

bog_bp = Blueprint("bog", __name__, url_prefix="/bog")


@bog_bp.route("/callback", methods=["POST"])
@csrf.exempt
def callback():
    """Apply a BOG payment status update.

    Answers 200 for anything we acknowledge, including duplicates and
    orders we do not know, so BOG stops retrying.  Processing failures
    answer 500 and BOG redelivers.
    """
    logger.info("BOG callback received")
    try:
        result = get_webhook_ingestor().ingest(request.get_data(), request.headers)
    except (ValidationError, SignatureError):
        raise
    except Exception:
        logger.exception("BOG callback processing error")
        return jsonify(api_error("Processing error")), 500
    return jsonify(api_success({"action": result.action, "payment_id": result.payment_id}))
