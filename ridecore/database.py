"""
MongoDB Database Connection using MongoEngine
Handles connection and disconnection to MongoDB
"""
import logging

from mongoengine import connect, disconnect

from ridecore.config import Settings

logger = logging.getLogger(__name__)


def connect_db(settings: Settings, **kwargs):
    """
    Connect to MongoDB using MongoEngine
    Uses MONGO_URI from the settings; extra kwargs go straight to mongoengine.connect
    """
    try:
        connect(host=settings.mongo_uri, alias="default", tz_aware=True, **kwargs)
        logger.info("Connected to MongoDB successfully")

    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {str(e)}")
        raise


def disconnect_db():
    """Disconnect from MongoDB"""
    disconnect(alias="default")
    logger.info("Disconnected from MongoDB")
