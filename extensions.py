# extensions.py
from flask_sqlalchemy import SQLAlchemy
import os
from redis import Redis
from rq import Queue
from dotenv import load_dotenv

db = SQLAlchemy()

load_dotenv()

# Redis 连接是惰性的，真正入队时才会建立连接
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
redis_conn = Redis.from_url(REDIS_URL)
notify_queue = Queue("notifications", connection=redis_conn)
