"""Top-level package for the temporary admin-privilege approval service."""

__all__ = [
    "APP_ENV",
    "__version__",
]

from dotenv import load_dotenv
import os
load_dotenv()

__version__ = "0.1.0"

# "production" | "development"; development relaxes approver auth when no
# ADMIN_KEY_HASH is configured and swaps in the in-memory privilege backend.
APP_ENV = os.getenv("APP_ENV", "production")
