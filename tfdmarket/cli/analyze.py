from __future__ import annotations

import argparse
import os
import subprocess
import sys
from pathlib import Path
from typing import List

from ..db import DEFAULT_DB_PATH, ENV_DB_PATH
from .config import AnalyzeConfig, load_config


def add_parser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(
        "analyze",
        help="Launch the Streamlit filter app",
        description="Start the interactive Streamlit app for filtering stored market searches.",
    )
    parser.add_argument(
        "config",
        type=Path,
        help="Path to a JSON config file describing analysis parameters.",
    )
    parser.set_defaults(func=run)
    return parser


def streamlit_command(config: AnalyzeConfig) -> List[str]:
    script_path = Path(__file__).resolve().parent.parent / "analysis_app.py"
    return [sys.executable, "-m", "streamlit", "run", str(script_path), *config.streamlit_args]


def launch_streamlit(config: AnalyzeConfig) -> int:
    env = os.environ.copy()
    resolved_db = config.resolved_db_path
    if resolved_db is not None:
        env[ENV_DB_PATH] = str(resolved_db)
    else:
        env.setdefault(ENV_DB_PATH, str(DEFAULT_DB_PATH))

    result = subprocess.run(streamlit_command(config), env=env, check=False)
    return result.returncode


def run(args: argparse.Namespace) -> int:
    config = load_config(args.config, AnalyzeConfig)
    return launch_streamlit(config)
