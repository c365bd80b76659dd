import os

import django
import redis
from rq import Worker


def main() -> None:
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "fleetplan.settings")
    django.setup()
    from django.conf import settings

    conn = redis.Redis.from_url(settings.FLEETPLAN_JOBS_REDIS_URL)
    Worker(["default"], connection=conn).work()


if __name__ == "__main__":
    main()
