"""
TravelPet Bot – plan a commuter train trip in Telegram and get reminded
30 minutes before departure.

Architecture
------------
- Global config (polling interval, poller count, timezone, ...) lives in an
  optional config.json; sane defaults are used when the file is absent.
- Users, trips and reminders are stored in  data/store.json.
- The bot token and the Yandex.Rasp API key are read from the BOT_TOKEN and
  YANDEX_API_KEY environment variables (.env file).

Commands
--------
/start    – Register and show the welcome message.
/newtrip  – Guided wizard: stations → schedule → train.
/mytrips  – List planned trips.
/cancel   – Abort the current wizard.
/help     – How it works.
"""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv

from travelpet.bot import build_application
from travelpet.config import env_secrets, load_global_config

load_dotenv()

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger("travelpet")


def main() -> None:
    secrets = env_secrets()
    if not secrets["bot_token"]:
        logger.error("BOT_TOKEN not set. Create a .env file with BOT_TOKEN=<your-token> or export it.")
        sys.exit(1)
    if not secrets["yandex_api_key"]:
        logger.warning("YANDEX_API_KEY not set; schedule lookups will be rejected.")

    gcfg = load_global_config()
    try:
        app = build_application(secrets["bot_token"], gcfg, secrets["yandex_api_key"])
    except (OSError, ValueError) as e:
        logger.error("Cannot open the data store: %s", e)
        sys.exit(1)

    logger.info("Starting TravelPet Bot…")
    app.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    main()
