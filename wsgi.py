from app import create_app
from scheduler import start_scheduler

app = create_app()
if app.config['SCHEDULER_ENABLED']:
    start_scheduler(app)
