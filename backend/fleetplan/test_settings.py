from .settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

FLEETPLAN_ASYNC_JOBS_MODE = "inprocess"
FLEETPLAN_DIRECTIVE_EXECUTOR = ""

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
