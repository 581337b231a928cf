from apscheduler.schedulers.background import BackgroundScheduler
from extensions import db
import logging

logger = logging.getLogger("scheduler")

scheduler = BackgroundScheduler()


# 结算到期未结算的挖矿 session（用户没打开 app 也能到账）
def settle_expired_sessions_job(app):
    with app.app_context():
        try:
            from utils.session_manager import settle_expired_sessions
            settled = settle_expired_sessions()
            if settled:
                logger.info(f"Expired mining sessions settled: {settled}")
        except Exception:
            db.session.rollback()
            logger.exception("Settling expired sessions failed")


def recheck_pending_payments_job(app):
    with app.app_context():
        try:
            from utils.payment_service import recheck_pending_payments
            confirmed = recheck_pending_payments()
            if confirmed:
                logger.info(f"Pending payments confirmed: {confirmed}")
        except Exception:
            db.session.rollback()
            logger.exception("Re-checking pending payments failed")


def expire_stale_payments_job(app):
    with app.app_context():
        try:
            from utils.payment_service import expire_stale_payments
            expired = expire_stale_payments()
            if expired:
                logger.info(f"Stale payments expired: {expired}")
        except Exception:
            db.session.rollback()
            logger.exception("Expiring stale payments failed")


def start_scheduler(app):
    scheduler.add_job(lambda: settle_expired_sessions_job(app), 'interval', minutes=1)
    scheduler.add_job(lambda: recheck_pending_payments_job(app), 'interval', minutes=1)
    # 每10min执行一次
    scheduler.add_job(lambda: expire_stale_payments_job(app), 'interval', minutes=10)

    scheduler.start()
    logger.info("Scheduler started: sessions/payments every 1min, expiry every 10min")
