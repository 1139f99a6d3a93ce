#!/usr/bin/env python3
"""
Print the effective configuration.
Run this script to check the environment before deploying.
"""

from dosekeeper import config

print("🔍 Environment check:")
print("=" * 50)

if config.TOKEN:
    print(f"✅ BOT_TOKEN: {config.TOKEN[:10]}... (found)")
else:
    print("❌ BOT_TOKEN: NOT FOUND!")
    print("   Add BOT_TOKEN to the environment or to .env")

print(f"📊 DB_URL: {config.DB_URL if config.DB_URL else 'not set (SQLite will be used)'}")
print(f"💾 LOCAL_STORAGE_DIR: {config.LOCAL_STORAGE_DIR}")
print(f"🔗 DASHBOARD_URL: {config.DASHBOARD_URL or 'not set'}")
print(f"⏱  Action window: +{config.DOSE_LEAD_MINUTES} .. +{config.DOSE_TOLERANCE_MINUTES} min")
print(f"🔁 Reset check every {config.RESET_CHECK_INTERVAL_SECONDS}s, sweep every {config.SWEEP_INTERVAL_SECONDS}s")
print(f"⏰ Snooze: {config.SNOOZE_MINUTES} min")

print("\n🌐 Checking internet access:")
try:
    import requests
    requests.get("https://api.telegram.org", timeout=5)
    print("✅ Telegram API reachable")
except Exception as e:
    print(f"❌ Cannot reach Telegram API: {e}")

if config.DOSE_TOLERANCE_MINUTES < config.DOSE_LEAD_MINUTES:
    print("\n⚠️  DOSE_TOLERANCE_MINUTES must not be smaller than DOSE_LEAD_MINUTES")
