from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate
from extensions import db
from dotenv import load_dotenv
import logging
import os

# 提前导入模型注册函数（明确显示依赖关系）
from models import register_models

from blueprints.mining import mining_bp
from blueprints.payments import payments_bp
from blueprints.stars import stars_bp
from blueprints.admin import admin_bp
from utils.errors import BoltError, IntegrityViolation, RateLimitedError

load_dotenv()


def _env_list(name):
    return [item.strip() for item in os.getenv(name, '').split(',') if item.strip()]


def _setup_logging(app):
    # 控制台日志，格式与 worker 保持一致
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s: %(message)s')
    root = logging.getLogger()
    if not any(getattr(h, '_bolt_handler', False) for h in root.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler._bolt_handler = True
        root.addHandler(console_handler)
    root.setLevel(logging.INFO)
    app.logger.setLevel(logging.INFO)


def create_app(test_config=None):
    app = Flask(__name__)

    CORS(app, supports_credentials=True)

    # ===== 配置 =====
    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY'),
        JWT_SECRET=os.getenv('JWT_SECRET'),
        SQLALCHEMY_DATABASE_URI=os.getenv('DB_URI'),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        REDIS_URL=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),

        # Telegram
        TELEGRAM_BOT_TOKEN=os.getenv('TELEGRAM_BOT_TOKEN'),
        TELEGRAM_WEBHOOK_SECRET=os.getenv('TELEGRAM_WEBHOOK_SECRET'),
        INIT_DATA_MAX_AGE=int(os.getenv('INIT_DATA_MAX_AGE', 3600)),
        NOTIFY_TIMEOUT=float(os.getenv('NOTIFY_TIMEOUT', 10)),

        # TON
        TON_API_URL=os.getenv('TON_API_URL', 'https://toncenter.com/api/v2'),
        TON_API_KEY=os.getenv('TON_API_KEY'),
        TON_API_TIMEOUT=float(os.getenv('TON_API_TIMEOUT', 10)),
        TON_RECEIVER_ADDRESSES=_env_list('TON_RECEIVER_ADDRESSES'),
        TON_AMOUNT_TOLERANCE=os.getenv('TON_AMOUNT_TOLERANCE', '0.01'),
        TX_MATCH_WINDOW_SECONDS=int(os.getenv('TX_MATCH_WINDOW_SECONDS', 600)),
        TX_CLOCK_SKEW_SECONDS=int(os.getenv('TX_CLOCK_SKEW_SECONDS', 30)),
        MIN_DEPOSIT_TON=os.getenv('MIN_DEPOSIT_TON', '0.1'),
        MAX_DEPOSIT_TON=os.getenv('MAX_DEPOSIT_TON', '100000'),
        PAYMENT_EXPIRY_MINUTES=int(os.getenv('PAYMENT_EXPIRY_MINUTES', 60)),

        # 挖矿
        DEFAULT_TOKENS_PER_HOUR=os.getenv('DEFAULT_TOKENS_PER_HOUR', '1.0'),
        USDT_PER_TOKEN=os.getenv('USDT_PER_TOKEN', '0.001'),
        COMPLETE_COOLDOWN_SECONDS=int(os.getenv('COMPLETE_COOLDOWN_SECONDS', 5)),

        # 验证限流
        VERIFY_MAX_ATTEMPTS=int(os.getenv('VERIFY_MAX_ATTEMPTS', 10)),
        VERIFY_WINDOW_SECONDS=int(os.getenv('VERIFY_WINDOW_SECONDS', 60)),

        SCHEDULER_ENABLED=os.getenv('SCHEDULER_ENABLED', 'True') == 'True',
    )
    if test_config:
        app.config.update(test_config)

    _setup_logging(app)

    # ===== 初始化扩展 =====
    db.init_app(app)
    Migrate(app, db)

    with app.app_context():
        register_models()

    # ===== 注册蓝图 =====
    blueprints = [
        mining_bp,
        payments_bp,
        stars_bp,
        admin_bp,
    ]
    for bp in blueprints:
        app.register_blueprint(bp)

    @app.errorhandler(BoltError)
    def handle_bolt_error(e):
        db.session.rollback()
        if isinstance(e, IntegrityViolation):
            app.logger.error(f"[integrity] {type(e).__name__}: {e.message}")
        elif e.status_code >= 500:
            app.logger.error(f"[{type(e).__name__}] {e.message}")
        else:
            app.logger.info(f"[{type(e).__name__}] {e.message}")

        response = jsonify(e.to_response())
        response.status_code = e.status_code
        if isinstance(e, RateLimitedError) and e.retry_after:
            response.headers['Retry-After'] = str(int(e.retry_after) + 1)
        return response

    # 健康检查
    @app.route('/')
    def health_check():
        return jsonify({'status': 'healthy'})

    return app


if __name__ == '__main__':
    from scheduler import start_scheduler  # 延迟导入
    app = create_app()
    if app.config['SCHEDULER_ENABLED']:
        start_scheduler(app)
    app.run(host='0.0.0.0', port=5000)
