"""ReviewPulse Worker Tasks."""

# Import all tasks to register them with Celery
from reviewpulse_worker.tasks import analysis  # noqa: F401
from reviewpulse_worker.tasks import maintenance  # noqa: F401
from reviewpulse_worker.tasks import reports  # noqa: F401
from reviewpulse_worker.tasks import scraping  # noqa: F401
