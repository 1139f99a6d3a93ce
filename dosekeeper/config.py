from dotenv import load_dotenv
import os

load_dotenv()

TOKEN = os.getenv("BOT_TOKEN")
DB_URL = os.getenv("DB_URL")
LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", ".dosekeeper")
DASHBOARD_URL = os.getenv("DASHBOARD_URL", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Action window around the scheduled time, applied by every caller
DOSE_LEAD_MINUTES = int(os.getenv("DOSE_LEAD_MINUTES", "0"))
DOSE_TOLERANCE_MINUTES = int(os.getenv("DOSE_TOLERANCE_MINUTES", "60"))

RESET_CHECK_INTERVAL_SECONDS = int(os.getenv("RESET_CHECK_INTERVAL_SECONDS", "60"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))
SNOOZE_MINUTES = int(os.getenv("SNOOZE_MINUTES", "5"))
