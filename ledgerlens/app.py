import os
import json
import queue
import logging
import threading
from datetime import datetime

from dotenv import load_dotenv

# Environment must be loaded before Config reads it
load_dotenv()

from flask import Flask, Response, jsonify, request, stream_with_context
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from .analytics import dashboard, spending_analytics
from .etl.categorize import is_valid_category
from .etl.config import Config
from .etl.errors import ExtractionFailure, FailureKind
from .etl.models import ExtractedTransaction
from .etl.normalize import parse_amount, parse_date
from .etl.pipeline import IngestionPipeline
from .store import TransactionQuery, create_store


def configure_logging():
    logging.basicConfig(
        filename=os.environ.get('LOG_FILE') or None,
        level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s: %(message)s'
    )


def create_app(store=None, pipeline=None, config=Config):
    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": config.CORS_ORIGINS}})

    store = store or create_store(config)
    pipeline = pipeline or IngestionPipeline(store, strategy=config.RECONCILIATION_STRATEGY,
                                             max_upload_bytes=config.MAX_UPLOAD_BYTES)
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES + 1024 * 1024
    upload_folder = os.path.abspath(config.UPLOAD_FOLDER)
    os.makedirs(upload_folder, exist_ok=True)

    app.extensions["ledgerlens.store"] = store
    app.extensions["ledgerlens.pipeline"] = pipeline

    # ─────────────────────────────────────────────────────────────
    # Upload
    # ─────────────────────────────────────────────────────────────

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({
            "status": "running",
            "message": "LedgerLens API is healthy",
            "timestamp": datetime.now().isoformat()
        })

    @app.route('/api/upload/statement', methods=['POST'])
    def upload_statement():
        file = request.files.get('statement')
        if file is None or file.filename == '':
            return jsonify({
                "success": False,
                "error": "No file uploaded. Please select a bank statement file."
            }), 400

        file_ext = os.path.splitext(file.filename)[1].lower().lstrip('.')
        if file_ext not in config.ALLOWED_EXTENSIONS:
            failure = ExtractionFailure(
                FailureKind.UNSUPPORTED_FORMAT,
                "Invalid file type. Only PDF, CSV, and TXT files are allowed.",
            )
            return jsonify(failure.to_dict()), 400

        # ─── Size Validation (before any extraction) ───
        file.seek(0, os.SEEK_END)
        size = file.tell()
        file.seek(0)
        try:
            pipeline.check_size(size)
        except ExtractionFailure as e:
            return jsonify(e.to_dict()), 400

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_filename = f"{timestamp}_{secure_filename(file.filename)}"
        temp_path = os.path.join(upload_folder, safe_filename)
        file.save(temp_path)
        try:
            with open(temp_path, 'rb') as f:
                data = f.read()
        finally:
            os.remove(temp_path)
        original_name = file.filename
        logging.info(f"Processing uploaded file: {original_name} ({file_ext}, {size} bytes)")

        cancel_event = threading.Event()
        events = progress_stream(
            lambda: pipeline.process(data, file_ext, original_name, cancel_event),
            cancel_event,
            config.STREAM_HEARTBEAT_SECONDS,
        )
        return Response(stream_with_context(events), mimetype='application/x-ndjson')

    # ─────────────────────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────────────────────

    @app.route('/api/transactions', methods=['GET'])
    def list_transactions():
        args = request.args
        try:
            query = TransactionQuery(
                session_tag=args.get('session') or None,
                category=args.get('category') if args.get('category') not in (None, '', 'All') else None,
                transaction_type=args.get('transactionType') if args.get('transactionType') not in (None, '', 'all') else None,
                start_date=_query_date(args.get('startDate')),
                end_date=_query_date(args.get('endDate')),
                search=args.get('search') or None,
                sort_by=args.get('sortBy', 'date'),
                sort_order=args.get('sortOrder', 'desc'),
                page=max(int(args.get('page', 1)), 1),
                limit=min(max(int(args.get('limit', 50)), 1), 500),
            )
        except ValueError as e:
            return jsonify({"success": False, "error": f"Invalid query: {e}"}), 400

        records, total = store.list(query)
        total_pages = -(-total // query.limit)
        return jsonify({
            "success": True,
            "data": {
                "transactions": [r.to_dict() for r in records],
                "pagination": {
                    "currentPage": query.page,
                    "totalPages": total_pages,
                    "totalCount": total,
                    "hasNext": query.page < total_pages,
                    "hasPrev": query.page > 1,
                },
                "sessionTag": query.session_tag,
            }
        })

    @app.route('/api/transactions/dashboard', methods=['GET'])
    def get_dashboard():
        session_tag = request.args.get('session') or None
        try:
            month = int(request.args['month']) if request.args.get('month') else None
            year = int(request.args['year']) if request.args.get('year') else None
        except ValueError:
            return jsonify({"success": False, "error": "month and year must be integers"}), 400
        if month is not None and not 1 <= month <= 12:
            return jsonify({"success": False, "error": "month must be between 1 and 12"}), 400
        records = store.records_for_session(session_tag)
        return jsonify({"success": True, "data": dashboard(records, month, year, session_tag)})

    @app.route('/api/transactions/analytics', methods=['GET'])
    def get_analytics():
        session_tag = request.args.get('session') or None
        timeframe = request.args.get('timeframe', 'month')
        try:
            data = spending_analytics(store.records_for_session(session_tag), timeframe)
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 400
        return jsonify({"success": True, "data": data})

    @app.route('/api/transactions/<tx_id>', methods=['GET'])
    def get_transaction(tx_id):
        tx = store.get(tx_id)
        if tx is None:
            return jsonify({"success": False, "error": "Transaction not found"}), 404
        return jsonify({"success": True, "data": tx.to_dict()})

    @app.route('/api/transactions', methods=['POST'])
    def create_transaction():
        body = request.get_json(silent=True) or {}
        try:
            tx = _transaction_from_body(body)
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 400
        tx.origin_tag = "manual"
        tx.is_verified = True
        tx.session_tag = body.get('sessionTag')
        saved = store.insert(tx)
        return jsonify({
            "success": True,
            "message": "Transaction created successfully",
            "data": saved.to_dict()
        }), 201

    @app.route('/api/transactions/<tx_id>', methods=['PUT'])
    def update_transaction(tx_id):
        existing = store.get(tx_id)
        if existing is None:
            return jsonify({"success": False, "error": "Transaction not found"}), 404

        body = request.get_json(silent=True) or {}
        merged = existing.to_dict()
        if 'description' in body and 'merchant' not in body:
            # Re-derive from the new description
            merged['merchant'] = None
        merged.update({k: v for k, v in body.items() if k in _EDITABLE_FIELDS})
        try:
            tx = _transaction_from_body(merged)
        except ValueError as e:
            return jsonify({"success": False, "error": str(e)}), 400
        # User edits count as verification
        tx.is_verified = True
        tx.origin_tag = existing.origin_tag
        tx.session_tag = existing.session_tag
        tx.original_text = existing.original_text

        updated = store.update(tx_id, tx)
        return jsonify({
            "success": True,
            "message": "Transaction updated successfully",
            "data": updated.to_dict()
        })

    @app.route('/api/transactions/<tx_id>', methods=['DELETE'])
    def delete_transaction(tx_id):
        deleted = store.delete(tx_id)
        if deleted is None:
            return jsonify({"success": False, "error": "Transaction not found"}), 404
        return jsonify({
            "success": True,
            "message": "Transaction deleted successfully",
            "data": deleted.to_dict()
        })

    @app.route('/api/transactions/bulk/update', methods=['PUT'])
    def bulk_update_transactions():
        body = request.get_json(silent=True) or {}
        tx_ids = body.get('transactionIds')
        if not tx_ids or not isinstance(tx_ids, list):
            return jsonify({"success": False, "error": "No transaction IDs provided"}), 400

        changes = {}
        for key, value in (body.get('updateData') or {}).items():
            column = _BULK_FIELDS.get(key)
            if column is None:
                return jsonify({"success": False, "error": f"Field cannot be bulk updated: {key}"}), 400
            changes[column] = value
        if 'category' in changes and not is_valid_category(changes['category']):
            changes['category'] = 'Other'

        matched, modified = store.bulk_update([str(i) for i in tx_ids], changes)
        return jsonify({
            "success": True,
            "message": f"Updated {modified} transactions",
            "data": {"matchedCount": matched, "modifiedCount": modified}
        })

    # ─────────────────────────────────────────────────────────────
    # Errors
    # ─────────────────────────────────────────────────────────────

    @app.errorhandler(413)
    def file_too_large(_e):
        failure = ExtractionFailure(FailureKind.FILE_TOO_LARGE, "File too large")
        return jsonify(failure.to_dict()), 413

    @app.errorhandler(404)
    def not_found(_e):
        return jsonify({"error": "Route not found"}), 404

    @app.errorhandler(Exception)
    def server_error(e):
        if isinstance(e, HTTPException):
            return e
        logging.exception("Unhandled server error")
        return jsonify({
            "success": False,
            "error": "Something went wrong!",
            "message": str(e) if app.debug else "Internal server error"
        }), 500

    return app


_EDITABLE_FIELDS = {"date", "description", "amount", "category", "merchant", "reference", "balance"}
_BULK_FIELDS = {
    "category": "category",
    "isVerified": "is_verified",
    "merchant": "merchant",
    "reference": "reference",
}


def progress_stream(run, cancel_event, heartbeat_seconds):
    """
    Relay pipeline progress as NDJSON lines.

    The pipeline runs on a worker thread so this generator is always parked
    at a yield or a short queue wait. Heartbeat lines keep the connection
    writing during slow stages; when the client is gone the server closes
    this generator and cancel_event stops the pipeline.
    """
    events = queue.Queue()

    def worker():
        try:
            for event in run():
                events.put(event)
        finally:
            events.put(None)

    threading.Thread(target=worker, name="ingestion-worker", daemon=True).start()

    finished = False
    last_p = 0
    try:
        while True:
            try:
                event = events.get(timeout=heartbeat_seconds)
            except queue.Empty:
                yield json.dumps({"p": last_p, "status": "heartbeat"}) + "\n"
                continue
            if event is None:
                finished = True
                return
            p, msg, res = event
            last_p = p
            if res:
                yield json.dumps({"p": p, "status": "success" if res.get("success") else "failed", **res}) + "\n"
            else:
                yield json.dumps({"p": p, "status": msg}) + "\n"
    finally:
        if not finished:
            logging.info("Upload stream closed before the pipeline finished; cancelling")
            cancel_event.set()


def _query_date(value):
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError(f"unrecognized date {value!r}")
    return parsed


def _transaction_from_body(body) -> ExtractedTransaction:
    """Validate a manual/edited transaction payload; zero amounts are rejected."""
    tx_date = parse_date(body.get('date'))
    if tx_date is None:
        raise ValueError("A valid transaction date is required")
    amount = parse_amount(body.get('amount'))
    if amount is None:
        raise ValueError("A numeric transaction amount is required")
    if amount == 0:
        raise ValueError("Transaction amount cannot be zero")
    description = " ".join(str(body.get('description') or '').split())
    if not description:
        raise ValueError("A transaction description is required")
    category = body.get('category')
    balance = body.get('balance')
    return ExtractedTransaction(
        date=tx_date,
        description=description,
        amount=amount,
        category=category if is_valid_category(category) else 'Other',
        merchant=body.get('merchant') or None,
        reference=body.get('reference') or None,
        balance=parse_amount(balance) if balance is not None else None,
    )


def main():
    configure_logging()
    logging.info("Server starting up...")
    app = create_app()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True',
            threaded=True)


if __name__ == '__main__':
    main()
