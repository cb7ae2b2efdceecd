import asyncio

from tfdmarket.cli.config import SearchConfig, load_config
from tfdmarket.cli.search import run_searches, store_outcomes
from tfdmarket.logbuffer import configure_logging


configure_logging()
search_cfg = load_config("configs/search.json", SearchConfig)
store_outcomes(search_cfg, asyncio.run(run_searches(search_cfg)))
