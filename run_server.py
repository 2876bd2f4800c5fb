"""
Run Chat Server - Direct launch script
"""
import json
import logging
import os
import sys

from dotenv import load_dotenv
load_dotenv()

import uvicorn

from config import get_settings
from kbchat import ActionDefinition, ChatAgent, Indexer, IngestionRunner, KnowledgeGroup
from kbchat.server import create_app

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger("run_server")


def load_json_list(path):
    """Read a JSON list from a file, or [] if the path is unset."""
    if not path:
        return []
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main():
    groups = [KnowledgeGroup(**g) for g in load_json_list(os.getenv("KNOWLEDGE_GROUPS_FILE"))]
    actions = [ActionDefinition.from_dict(a) for a in load_json_list(os.getenv("ACTIONS_FILE"))]

    # Secrets are looked up per action: ACTION_SECRET_<ACTION_ID>
    def secret_resolver(action):
        return os.getenv(f"ACTION_SECRET_{action.id.upper().replace('-', '_')}")

    indexer = Indexer()
    agent = ChatAgent(indexer, actions=actions, secret_resolver=secret_resolver)
    runner = IngestionRunner(indexer)
    app = create_app(agent, runner=runner, groups=groups)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting kbchat on {host}:{port} with {len(groups)} knowledge groups, {len(actions)} actions")

    uvicorn.run(app, host=host, port=port, ws_ping_interval=settings.chat.heartbeat_seconds)


if __name__ == "__main__":
    main()
