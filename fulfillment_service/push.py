# push.py
"""
Push transport.

``PushPort`` is what the notification dispatcher talks to. Two adapters:
``SNSPushAdapter`` publishes through AWS SNS mobile push (``USE_AWS=true``),
``LocalPushAdapter`` logs and records every push in memory for local
development and tests.

Per-token failures come back as ``PushResult`` entries with a normalized
error code; ``INVALID_TOKEN_ERRORS`` are the codes that mean the device
registration is gone for good.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
from uuid import uuid4

import aioboto3
from botocore.exceptions import ClientError

from .config import AWS_REGION, SNS_TOPIC_ARN_PREFIX, USE_AWS, get_logger

logger = get_logger("fulfillment-service.push")

TOKEN_NOT_REGISTERED = "registration-token-not-registered"
INVALID_TOKEN = "invalid-registration-token"
INVALID_TOKEN_ERRORS = frozenset({TOKEN_NOT_REGISTERED, INVALID_TOKEN})

# SNS error codes -> normalized per-token codes
_SNS_TOKEN_ERRORS = {
    "EndpointDisabled": TOKEN_NOT_REGISTERED,
    "NotFound": TOKEN_NOT_REGISTERED,
    "InvalidParameter": INVALID_TOKEN,
}


@dataclass
class PushMessage:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"title": self.title, "body": self.body, "data": self.data}


@dataclass
class PushResult:
    token: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class MulticastResult:
    responses: List[PushResult]

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.responses if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.responses) - self.success_count

    @property
    def invalid_tokens(self) -> List[str]:
        return [r.token for r in self.responses if not r.success and r.error in INVALID_TOKEN_ERRORS]


class PushPort(ABC):
    """Abstract push transport."""

    # provider's per-call token limit
    max_batch_size = 500

    @abstractmethod
    async def send_multicast(self, tokens: List[str], message: PushMessage) -> MulticastResult:
        ...

    @abstractmethod
    async def send_to_topic(self, topic: str, message: PushMessage) -> Optional[str]:
        ...

    @abstractmethod
    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> None:
        ...

    @abstractmethod
    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> None:
        ...


def role_topic(role: str) -> str:
    return f"role_{role.lower()}"


class SNSPushAdapter(PushPort):
    """
    AWS SNS mobile push. Device tokens are SNS platform endpoint ARNs; topics
    are SNS topics named ``<SNS_TOPIC_ARN_PREFIX><topic>``.
    """

    def __init__(self, region: str = AWS_REGION, topic_arn_prefix: str = SNS_TOPIC_ARN_PREFIX):
        self.region = region
        self.topic_arn_prefix = topic_arn_prefix
        self.session = aioboto3.Session()

    def _topic_arn(self, topic: str) -> str:
        return f"{self.topic_arn_prefix}{topic}"

    @staticmethod
    def _payload(message: PushMessage) -> str:
        notification = {"notification": {"title": message.title, "body": message.body}, "data": message.data}
        return json.dumps({"default": message.body, "GCM": json.dumps(notification)})

    async def send_multicast(self, tokens: List[str], message: PushMessage) -> MulticastResult:
        results = []
        async with self.session.client("sns", region_name=self.region) as sns:
            for token in tokens:
                try:
                    resp = await sns.publish(
                        TargetArn=token,
                        Message=self._payload(message),
                        MessageStructure="json",
                    )
                    results.append(PushResult(token=token, success=True, message_id=resp.get("MessageId")))
                except ClientError as e:
                    code = e.response.get("Error", {}).get("Code", "Unknown")
                    results.append(PushResult(token=token, success=False, error=_SNS_TOKEN_ERRORS.get(code, code)))
        return MulticastResult(results)

    async def send_to_topic(self, topic: str, message: PushMessage) -> Optional[str]:
        async with self.session.client("sns", region_name=self.region) as sns:
            resp = await sns.publish(
                TopicArn=self._topic_arn(topic),
                Message=self._payload(message),
                MessageStructure="json",
            )
        return resp.get("MessageId")

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> None:
        async with self.session.client("sns", region_name=self.region) as sns:
            for token in tokens:
                await sns.subscribe(TopicArn=self._topic_arn(topic), Protocol="application", Endpoint=token)

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> None:
        wanted = set(tokens)
        async with self.session.client("sns", region_name=self.region) as sns:
            paginator = sns.get_paginator("list_subscriptions_by_topic")
            async for page in paginator.paginate(TopicArn=self._topic_arn(topic)):
                for sub in page.get("Subscriptions", []):
                    if sub.get("Endpoint") in wanted:
                        await sns.unsubscribe(SubscriptionArn=sub["SubscriptionArn"])


class LocalPushAdapter(PushPort):
    """Push adapter that logs and records pushes in memory."""

    def __init__(self):
        self.multicasts: List[dict] = []
        self.topic_sends: List[dict] = []
        self.topics: Dict[str, Set[str]] = {}
        self.token_errors: Dict[str, str] = {}
        self.fail_transport = False

    def configure(self, token_errors: Optional[Dict[str, str]] = None, fail_transport: bool = False):
        """Make given tokens fail with a per-token error code, or the whole transport raise."""
        self.token_errors = dict(token_errors or {})
        self.fail_transport = fail_transport

    def _check_transport(self):
        if self.fail_transport:
            raise ConnectionError("push transport unavailable")

    async def send_multicast(self, tokens: List[str], message: PushMessage) -> MulticastResult:
        self._check_transport()
        self.multicasts.append({"tokens": list(tokens), **message.to_dict()})
        results = []
        for token in tokens:
            error = self.token_errors.get(token)
            if error:
                results.append(PushResult(token=token, success=False, error=error))
            else:
                results.append(PushResult(token=token, success=True, message_id=f"push-{uuid4().hex[:12]}"))
        logger.info(f"[PUSH LOCAL] '{message.title}' -> {len(tokens)} device(s)")
        return MulticastResult(results)

    async def send_to_topic(self, topic: str, message: PushMessage) -> Optional[str]:
        self._check_transport()
        self.topic_sends.append({"topic": topic, **message.to_dict()})
        logger.info(f"[PUSH LOCAL] '{message.title}' -> topic {topic}")
        return f"push-{uuid4().hex[:12]}"

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> None:
        self.topics.setdefault(topic, set()).update(tokens)

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> None:
        self.topics.get(topic, set()).difference_update(tokens)


_adapter: Optional[PushPort] = None


def get_push_adapter() -> PushPort:
    """Configured push adapter (singleton)."""
    global _adapter
    if _adapter is None:
        _adapter = SNSPushAdapter() if USE_AWS else LocalPushAdapter()
    return _adapter


def set_push_adapter(adapter: Optional[PushPort]) -> None:
    global _adapter
    _adapter = adapter
