# medimart_api/topic_generator/create_topic.py

import asyncio
import logging
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import (
    KafkaConnectionError,
    TopicAlreadyExistsError,
    NotControllerError,
    LeaderNotAvailableError,
)
from medimart_api import settings


logger = logging.getLogger(__name__)

async def create_kafka_topics(
    topic_names: list[str],
    num_partitions: int = 1,
    replication_factor: int = 1,
    bootstrap_servers: str = settings.KAFKA_BOOTSTRAP_SERVERS,
    max_retries: int = 5,
    retry_interval: int = 10
):
    """
    Ensures the given Kafka topics exist.

    Each topic is created on its own so an existing topic does not stop the
    remaining ones from being created.

    Args:
        topic_names (list[str]): Topics the service produces to or consumes from.
        num_partitions (int): Number of partitions per topic.
        replication_factor (int): Replication factor per topic.
        bootstrap_servers (str): Kafka broker address.
        max_retries (int): Maximum number of retries for transient errors.
        retry_interval (int): Seconds to wait between retries.

    Raises:
        RuntimeError: If a topic cannot be created after max_retries.
    """
    admin_client = AIOKafkaAdminClient(bootstrap_servers=bootstrap_servers)

    try:
        await admin_client.start()
        for topic_name in topic_names:
            retries = 0
            while retries < max_retries:
                try:
                    await admin_client.create_topics(
                        new_topics=[
                            NewTopic(name=topic_name, num_partitions=num_partitions, replication_factor=replication_factor)
                        ],
                        validate_only=False
                    )
                    logger.info(f"Topic '{topic_name}' created successfully.")
                    break
                except TopicAlreadyExistsError:
                    logger.info(f"Topic '{topic_name}' already exists.")
                    break
                except (NotControllerError, LeaderNotAvailableError, KafkaConnectionError) as e:
                    retries += 1
                    logger.warning(f"Transient error ({e}), retrying {retries}/{max_retries} after {retry_interval} seconds...")
                    await asyncio.sleep(retry_interval)
            else:
                raise RuntimeError(f"Failed to create Kafka topic '{topic_name}' after {max_retries} retries.")
    finally:
        await admin_client.close()
