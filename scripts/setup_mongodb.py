#!/usr/bin/env python3
"""
MongoDB Atlas Setup Script

Prepares MongoDB Atlas Vector Search for kbchat:
1. Test the MongoDB connection
2. Create the chunks collection if missing
3. Create the vector search index (embedding + scrape_id filter field)

Usage:
    python scripts/setup_mongodb.py
"""

import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv()

from config import get_settings
from kbchat.vector_store import MongoDBVectorStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def index_exists(collection, index_name: str) -> bool:
    """Check if the search index already exists."""
    for idx in collection.list_search_indexes():
        if idx.get("name") == index_name:
            logger.info(f"Vector index '{index_name}' found, status: {idx.get('status', 'unknown')}")
            return True
    return False


def main():
    settings = get_settings()
    if not settings.vector_store.mongodb_uri:
        print("❌ MONGODB_URI is not set in .env")
        sys.exit(1)

    store = MongoDBVectorStore(dimension=settings.embedding.dimension)
    store._connect()

    db = store._client[store.database_name]
    if store.collection_name not in db.list_collection_names():
        db.create_collection(store.collection_name)
        logger.info(f"Created collection {store.database_name}.{store.collection_name}")

    if not index_exists(store._collection, store.vector_index):
        store.create_vector_index()
        print("Index requested. It becomes queryable once Atlas reports it as READY.")

    print(f"""
Configuration:
  Database:   {store.database_name}
  Collection: {store.collection_name}
  Index:      {store.vector_index}
  Dimension:  {store.dimension}

Set VECTOR_STORE_PROVIDER=mongodb in .env to use it.
""")


if __name__ == "__main__":
    main()
