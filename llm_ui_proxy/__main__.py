"""Entry point for ``python -m llm_ui_proxy``."""

import sys

from llm_ui_proxy.proxy.server import main

sys.exit(main())
