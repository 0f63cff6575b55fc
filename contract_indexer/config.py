import os, shlex
from dotenv import load_dotenv

# always load from local file
load_dotenv(".env")

# -------- env / config --------
ETHERSCAN_API_KEY  = os.getenv("ETHERSCAN_API_KEY", "")
ETHERSCAN_URL      = os.getenv("ETHERSCAN_URL", "https://api.etherscan.io/api")
ETHERSCAN_CHAIN_ID = os.getenv("ETHERSCAN_CHAIN_ID", "")
EXPLORER_TIMEOUT   = float(os.getenv("EXPLORER_TIMEOUT", "10"))
DB_PATH            = os.getenv("DB_PATH", "contracts_index.sqlite")
LOG_LEVEL          = os.getenv("LOG_LEVEL", "INFO").upper()

# backfill worker command; contract ids are appended as positional args
BACKFILL_CMD       = shlex.split(os.getenv("BACKFILL_CMD", "contract-backfill"))
