"""A minimal Kafka producer and the publisher that sends job payloads to Kafka."""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import random
import struct
import time
from typing import Any

from tempus.config import AppConfig
from tempus.errors import KafkaError

logger = logging.getLogger(__name__)

_API_PRODUCE = 0
_API_METADATA = 3
_PRODUCE_VERSION = 3
_METADATA_VERSION = 1
_RETRIABLE_CODES = frozenset({3, 5, 6, 7, 13, 14, 15, 16, 19, 20})
_COMPRESSION_CODECS = {"none": 0, "gzip": 1}
_DEFAULT_PORT = 9092


def _crc32c_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        crc = n
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _crc32c_table()


def crc32c(data: bytes) -> int:
    """Castagnoli CRC used by Kafka record batches."""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def _varint(value: int) -> bytes:
    zigzag = ((value << 1) ^ (value >> 63)) & 0xFFFFFFFFFFFFFFFF
    out = bytearray()
    while True:
        low = zigzag & 0x7F
        zigzag >>= 7
        if zigzag:
            out.append(low | 0x80)
        else:
            out.append(low)
            return bytes(out)


def _string(value: str | None) -> bytes:
    if value is None:
        return struct.pack(">h", -1)
    raw = value.encode()
    return struct.pack(">h", len(raw)) + raw


def encode_record_batch(value: bytes, timestamp_ms: int, codec: int = 0) -> bytes:
    """Encode one keyless record as a version 2 record batch."""
    body = (
        b"\x00"
        + _varint(0)
        + _varint(0)
        + _varint(-1)
        + _varint(len(value))
        + value
        + _varint(0)
    )
    records = _varint(len(body)) + body
    if codec == 1:
        records = gzip.compress(records)
    after_crc = (
        struct.pack(">hiqqqhii", codec, 0, timestamp_ms, timestamp_ms, -1, -1, -1, 1) + records
    )
    rest = struct.pack(">ibI", 0, 2, crc32c(after_crc)) + after_crc
    return struct.pack(">qi", 0, len(rest)) + rest


class _Retriable(Exception):
    pass


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def _take(self, fmt: str) -> int:
        (value,) = struct.unpack_from(fmt, self.data, self.pos)
        self.pos += struct.calcsize(fmt)
        return value

    def int8(self) -> int:
        return self._take(">b")

    def int16(self) -> int:
        return self._take(">h")

    def int32(self) -> int:
        return self._take(">i")

    def int64(self) -> int:
        return self._take(">q")

    def string(self) -> str | None:
        size = self.int16()
        if size < 0:
            return None
        value = self.data[self.pos : self.pos + size].decode()
        self.pos += size
        return value


class _Connection:
    def __init__(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, client_id: str
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._client_id = client_id
        self._correlation = 0
        self._lock = asyncio.Lock()

    async def request(self, api_key: int, version: int, body: bytes) -> _Reader:
        async with self._lock:
            self._correlation += 1
            correlation = self._correlation
            message = struct.pack(">hhi", api_key, version, correlation)
            message += _string(self._client_id) + body
            self._writer.write(struct.pack(">i", len(message)) + message)
            await self._writer.drain()
            (size,) = struct.unpack(">i", await self._reader.readexactly(4))
            data = await self._reader.readexactly(size)
        (received,) = struct.unpack_from(">i", data)
        if received != correlation:
            raise _Retriable("correlation id mismatch")
        return _Reader(data[4:])

    def close(self) -> None:
        self._writer.close()


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep:
        return address.strip(), _DEFAULT_PORT
    return host, int(port)


class KafkaProducer:
    """Sends single records to the partition leaders of a Kafka cluster."""

    def __init__(
        self,
        bootstrap_servers: str,
        *,
        message_timeout_ms: int = 30000,
        retries: int = 5,
        batch_size: int = 16384,
        compression_type: str = "none",
        acks: str = "all",
        enable_idempotence: bool = True,
        client_id: str = "tempus",
    ) -> None:
        self.bootstrap = [_parse_address(a) for a in bootstrap_servers.split(",") if a.strip()]
        if not self.bootstrap:
            raise KafkaError("No bootstrap servers configured")
        self.message_timeout_ms = message_timeout_ms
        self.retries = retries
        self.batch_size = batch_size
        self.compression_type = compression_type
        self.acks = -1 if acks == "all" else int(acks)
        self.enable_idempotence = enable_idempotence
        self.client_id = client_id
        self._codec = _COMPRESSION_CODECS.get(compression_type, 0)
        if compression_type not in _COMPRESSION_CODECS:
            logger.warning("Compression %r unavailable, sending uncompressed", compression_type)
        self._brokers: dict[int, tuple[str, int]] = {}
        self._partitions: dict[str, list[tuple[int, int]]] = {}
        self._connections: dict[tuple[str, int], _Connection] = {}

    async def send(
        self, topic: str, value: str | bytes, timestamp_ms: int | None = None
    ) -> tuple[int, int]:
        """Send one record; return its partition and offset."""
        data = value.encode() if isinstance(value, str) else value
        stamp = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        try:
            return await asyncio.wait_for(
                self._send_with_retries(topic, data, stamp), self.message_timeout_ms / 1000
            )
        except TimeoutError:
            raise KafkaError("Message timed out") from None

    async def close(self) -> None:
        """Close every open broker connection."""
        for connection in self._connections.values():
            connection.close()
        self._connections.clear()

    async def _send_with_retries(self, topic: str, data: bytes, stamp: int) -> tuple[int, int]:
        last: BaseException | None = None
        for attempt in range(self.retries + 1):
            try:
                return await self._produce_once(topic, data, stamp)
            except (_Retriable, OSError, asyncio.IncompleteReadError) as exc:
                last = exc
                await self.close()
                self._partitions.pop(topic, None)
                if attempt < self.retries:
                    await asyncio.sleep(0.1)
        raise KafkaError(str(last))

    async def _connection(self, address: tuple[str, int]) -> _Connection:
        connection = self._connections.get(address)
        if connection is None:
            reader, writer = await asyncio.open_connection(*address)
            connection = _Connection(reader, writer, self.client_id)
            self._connections[address] = connection
        return connection

    async def _topic_partitions(self, topic: str) -> list[tuple[int, int]]:
        if topic in self._partitions:
            return self._partitions[topic]
        last: BaseException | None = None
        for address in [*self._brokers.values(), *self.bootstrap]:
            try:
                connection = await self._connection(address)
                reply = await connection.request(
                    _API_METADATA, _METADATA_VERSION, struct.pack(">i", 1) + _string(topic)
                )
            except (OSError, asyncio.IncompleteReadError) as exc:
                last = exc
                self._connections.pop(address, None)
                continue
            return self._read_metadata(topic, reply)
        raise _Retriable(f"No broker reachable: {last}")

    def _read_metadata(self, topic: str, reply: _Reader) -> list[tuple[int, int]]:
        for _ in range(reply.int32()):
            node = reply.int32()
            host = reply.string() or ""
            port = reply.int32()
            reply.string()
            self._brokers[node] = (host, port)
        reply.int32()
        found: list[tuple[int, int]] = []
        for _ in range(reply.int32()):
            error = reply.int16()
            name = reply.string()
            reply.int8()
            for _ in range(reply.int32()):
                reply.int16()
                partition = reply.int32()
                leader = reply.int32()
                for _ in range(2):
                    for _ in range(reply.int32()):
                        reply.int32()
                if name == topic and leader >= 0:
                    found.append((partition, leader))
            if name == topic and error:
                if error in _RETRIABLE_CODES:
                    raise _Retriable(f"Topic {topic} unavailable (error code {error})")
                raise KafkaError(f"Topic {topic} rejected (error code {error})")
        if not found:
            raise _Retriable(f"No leader available for topic {topic}")
        self._partitions[topic] = found
        return found

    async def _produce_once(self, topic: str, data: bytes, stamp: int) -> tuple[int, int]:
        partition, leader = random.choice(await self._topic_partitions(topic))
        address = self._brokers.get(leader)
        if address is None:
            raise _Retriable(f"Unknown leader {leader}")
        batch = encode_record_batch(data, stamp, self._codec)
        body = (
            _string(None)
            + struct.pack(">hi", self.acks, self.message_timeout_ms)
            + struct.pack(">i", 1)
            + _string(topic)
            + struct.pack(">iii", 1, partition, len(batch))
            + batch
        )
        connection = await self._connection(address)
        reply = await connection.request(_API_PRODUCE, _PRODUCE_VERSION, body)
        result: tuple[int, int] | None = None
        for _ in range(reply.int32()):
            reply.string()
            for _ in range(reply.int32()):
                got_partition = reply.int32()
                error = reply.int16()
                offset = reply.int64()
                reply.int64()
                if error in _RETRIABLE_CODES:
                    raise _Retriable(f"Broker error code {error}")
                if error:
                    raise KafkaError(f"Broker error code {error}")
                result = (got_partition, offset)
        if result is None:
            raise _Retriable("Empty produce response")
        return result


def create_kafka_producer(config: AppConfig) -> KafkaProducer:
    """Create a producer from the Kafka section of the configuration."""
    kafka = config.kafka
    logger.info("Creating Kafka producer with bootstrap servers: %s", kafka.bootstrap_servers)
    return KafkaProducer(
        kafka.bootstrap_servers,
        message_timeout_ms=kafka.producer_timeout_secs * 1000,
        retries=kafka.producer_retries,
        batch_size=kafka.batch_size,
        compression_type=kafka.compression_type,
        acks="all",
        enable_idempotence=True,
    )


_default_producer: KafkaProducer | None = None


def get_default_producer(config: AppConfig | None = None) -> KafkaProducer:
    """Return the shared producer, creating it on first use."""
    global _default_producer
    if _default_producer is None:
        _default_producer = create_kafka_producer(config or AppConfig.load())
    return _default_producer


async def _publish(producer: Any, topic: str, payload: Any) -> None:
    logger.info("Publishing message to Kafka topic: %s", topic)
    try:
        partition, offset = await producer.send(
            topic, json.dumps(payload), int(time.time() * 1000)
        )
    except KafkaError as exc:
        logger.error("Failed to publish message to Kafka: %s", exc.detail)
        raise
    logger.info(
        "Message successfully published to topic: %s, partition: %s, offset: %s",
        topic,
        partition,
        offset,
    )


class KafkaPublisher:
    """Publishes JSON payloads through a producer."""

    def __init__(self, config: AppConfig, producer: KafkaProducer | None = None) -> None:
        self.config = config
        self.producer = producer if producer is not None else get_default_producer(config)

    async def publish_message(self, topic: str, payload: Any) -> None:
        await _publish(self.producer, topic, payload)

    async def publish_to_default_topic(self, payload: Any) -> None:
        await self.publish_message(self.config.kafka.default_topic, payload)


async def publish_kafka_message(
    target: str,
    payload: Any,
    config: AppConfig | None = None,
    producer: KafkaProducer | None = None,
) -> None:
    """Publish a payload to the target topic, or the default topic if it is empty."""
    config = config or AppConfig.load()
    producer = producer if producer is not None else get_default_producer(config)
    topic = target or config.kafka.default_topic
    await _publish(producer, topic, payload)