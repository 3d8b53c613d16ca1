"""
greconcile - request rewriting layer between Claude Code and Antigravity

Reconciles thinking blocks and repairs tool-call pairing so that requests
forwarded to Claude, Gemini and GPT backed models are accepted on the
first attempt.
"""

__version__ = "1.0.0"

# Configuration directory
CONFIG_DIR = "~/.greconcile"
CONFIG_FILE = "~/.greconcile/config.json"
LOG_FILE = "~/.greconcile/logs/greconcile.log"
