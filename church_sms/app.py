import csv
import logging
import time
import uuid
from datetime import datetime

from flask import Flask, g, jsonify, request

from church_sms import config
from church_sms.database import DEFAULT_GROUPS
from church_sms.logging_setup import setup_logging
from church_sms.system import build_system, seed_members

logger = logging.getLogger(__name__)

TWILIO_ERROR_MEANINGS = {
    '30003': 'Unreachable destination handset',
    '30007': 'Recipient device does not support MMS',
    '30008': 'Message blocked by carrier',
    '30034': 'A2P 10DLC registration issue',
    '30035': 'Media file too large',
    '30036': 'Unsupported media format',
    '11200': 'HTTP retrieval failure',
    '21610': 'Recipient has opted out (STOP)',
}


def parse_media(form):
    """Twilio sends NumMedia plus indexed MediaUrlN / MediaContentTypeN fields"""
    try:
        num_media = int(form.get('NumMedia', 0) or 0)
    except ValueError:
        num_media = 0

    media_urls = []
    for i in range(num_media):
        media_url = form.get(f'MediaUrl{i}')
        if media_url:
            media_urls.append({
                'url': media_url,
                'type': form.get(f'MediaContentType{i}') or 'unknown',
                'index': i
            })
    return media_urls


def create_app(sms_system):
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = 100 * 1024 * 1024

    @app.route('/webhook/sms', methods=['POST'])
    def handle_sms_webhook():
        """Acknowledge immediately, process the message in the background"""
        request_start = time.time()
        request_id = str(uuid.uuid4())[:8]

        from_number = request.form.get('From', '').strip()
        message_body = request.form.get('Body', '').strip()
        media_urls = parse_media(request.form)

        logger.info(f"📨 [{request_id}] From: {from_number}, Body: '{message_body}', Media: {len(media_urls)}")

        if not from_number:
            logger.warning(f"⚠️ [{request_id}] Missing From number")
            return "OK", 200

        sms_system.submit_webhook_message(from_number, message_body, media_urls, request_id)

        processing_time = round((time.time() - request_start) * 1000, 2)
        logger.info(f"⚡ [{request_id}] Webhook completed in {processing_time}ms")
        return "OK", 200

    @app.route('/webhook/status', methods=['POST'])
    def handle_status_callback():
        """Delivery status callbacks from Twilio are logged only"""
        message_sid = request.form.get('MessageSid')
        message_status = request.form.get('MessageStatus')
        error_code = request.form.get('ErrorCode')

        logger.info(f"📊 Status Update for {message_sid}: {message_status} (to {request.form.get('To')})")
        if error_code:
            meaning = TWILIO_ERROR_MEANINGS.get(error_code, request.form.get('ErrorMessage') or 'unknown')
            logger.warning(f"   ❌ Error {error_code}: {meaning}")

        return "OK", 200

    @app.route('/health', methods=['GET'])
    def health_check():
        health_data = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "environment": "development" if config.DEVELOPMENT_MODE else "production"
        }

        try:
            counts = sms_system.db.get_activity_counts()
        except Exception as e:
            logger.error(f"❌ Health check failed: {e}")
            return jsonify({"status": "unhealthy", "error": str(e),
                            "timestamp": datetime.now().isoformat()}), 500
        health_data["database"] = {"status": "connected", **counts}

        for name, service in (("sms_gateway", sms_system.gateway), ("media_storage", sms_system.storage)):
            try:
                health_data[name] = service.status()
            except Exception as e:
                health_data[name] = {"status": "error", "error": str(e)}

        scheduler = sms_system.scheduler
        health_data["smart_reaction_system"] = {
            "status": "active",
            "daily_summary_time": scheduler.daily_time,
            "pause_summary_trigger": f"{int(scheduler.silence.total_seconds() // 60)} minutes silence",
            "min_pending_reactions": scheduler.min_reactions,
            "pending_reactions": sms_system.db.count_unprocessed_reactions()
        }
        return jsonify(health_data), 200

    @app.route('/', methods=['GET'])
    def home():
        counts = sms_system.db.get_activity_counts()
        return (
            f"🏛️ Church SMS Broadcasting System\n"
            f"📅 {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
            f"✅ Registered Members: {counts['active_members']}\n"
            f"✅ Messages (24h): {counts['recent_messages']}\n"
            f"✅ Silent Reactions (24h): {counts['recent_reactions']}\n"
            f"✅ Media Files Processed: {counts['processed_media']}\n"
        ), 200, {'Content-Type': 'text/plain; charset=utf-8'}

    @app.route('/test', methods=['GET', 'POST'])
    def test_endpoint():
        """Preview reaction detection and target resolution without sending anything"""
        if request.method == 'GET':
            return jsonify({
                "status": "✅ Test endpoint active",
                "usage": "POST Body (and optionally From) to preview reaction detection",
                "reaction_patterns": [
                    "Loved \"message text\"",
                    "Laughed at \"Mike: message text\"",
                    "Reacted 😂 to \"message text\"",
                    "❤️ to \"message text\"",
                    "Amen to \"message text\""
                ]
            })

        from_number = request.form.get('From', '')
        message_body = request.form.get('Body', '')
        reaction = sms_system.matcher.detect(message_body, from_number)
        target = None
        if reaction:
            resolution = sms_system.resolver.find_original_message(reaction['target_message_fragment'])
            if resolution:
                target = {
                    "message_id": resolution['message']['id'],
                    "from_name": resolution['message']['from_name'],
                    "method": resolution['method'],
                    "confidence": resolution['confidence']
                }

        return jsonify({
            "body": message_body,
            "reaction_detected": reaction is not None,
            "reaction_data": reaction,
            "target": target,
            "timestamp": datetime.now().isoformat()
        })

    @app.route('/analytics', methods=['GET'])
    def analytics():
        return jsonify({
            "reactions": sms_system.db.get_reaction_stats(),
            "recent_summaries": sms_system.db.get_reaction_summaries(limit=5),
            "timestamp": datetime.now().isoformat()
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            "error": "Endpoint not found",
            "available_endpoints": ["/", "/health", "/analytics", "/webhook/sms", "/webhook/status", "/test"]
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"❌ Internal server error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.before_request
    def before_request():
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        start_time = g.get('start_time')
        if start_time is None:
            return response

        duration = round((time.time() - start_time) * 1000, 2)
        if duration > 1000:
            logger.warning(f"⏰ Slow request: {request.endpoint} took {duration}ms")
        sms_system.db.record_performance_metric(
            f"http_{request.endpoint or 'unknown'}", int(duration), response.status_code < 400)
        return response

    return app


def load_roster(path):
    """Read phone,name,is_admin,group rows from a CSV roster file"""
    with open(path, newline='', encoding='utf-8') as roster_file:
        for row in csv.DictReader(roster_file):
            yield (
                row['phone'],
                row['name'],
                str(row.get('is_admin', '')).strip().lower() in ('1', 'true', 'yes'),
                row.get('group') or DEFAULT_GROUPS[0][0]
            )


def main():
    setup_logging(config.LOG_LEVEL, config.LOG_FILE)
    logger.info("STARTING: Church SMS System with Smart Reaction Tracking...")
    if config.DEVELOPMENT_MODE:
        logger.info("DEVELOPMENT MODE: Running with mock services where credentials are missing")

    sms_system = build_system()
    if config.ROSTER_FILE:
        seed_members(sms_system.db, load_roster(config.ROSTER_FILE))

    sms_system.start()
    app = create_app(sms_system)
    logger.info("SUCCESS: Church SMS System ready - webhook endpoint: /webhook/sms")

    try:
        app.run(
            host='0.0.0.0',
            port=config.PORT,
            debug=config.DEVELOPMENT_MODE,
            threaded=True,
            use_reloader=False
        )
    finally:
        sms_system.shutdown()


if __name__ == '__main__':
    main()
