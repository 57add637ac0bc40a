"""存储事件通知解析

队列中的消息可能来自多种投递方式，每种信封对应一个pydantic模型：

- S3直接投递：顶层 ``Records`` 数组
- SNS转发：``Type == "Notification"``，``Message`` 字段是包含 ``Records`` 的JSON字符串
- EventBridge：``detail.bucket.name`` / ``detail.object.key``，
  或CloudTrail格式的 ``detail.requestParameters.bucketName`` / ``key``
- 测试事件：``Event == "s3:TestEvent"``，配置通知时由S3发送

任何信封都校验不通过的消息解析为 UnrecognizedNotification
"""

import json
from typing import Any, Callable, Literal, Optional, Union
from urllib.parse import unquote

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError


OBJECT_CREATED_PREFIX = "ObjectCreated:"


class NotificationParseError(ValueError):
    """消息体不是合法的JSON对象"""


# 信封模型

class S3BucketRef(BaseModel):
    name: Optional[str] = None


class S3ObjectRef(BaseModel):
    key: str = Field(min_length=1)
    size: Optional[int] = Field(default=None, ge=0)


class S3Entity(BaseModel):
    bucket: S3BucketRef = Field(default_factory=S3BucketRef)
    s3_object: S3ObjectRef = Field(alias="object")


class S3EventRecord(BaseModel):
    event_name: Optional[str] = Field(default=None, alias="eventName")
    s3: S3Entity


class RecordsEnvelope(BaseModel):
    # 单条记录单独校验，一条格式错误不影响同一消息中的其他记录
    records: list[Any] = Field(alias="Records")


class SnsEnvelope(BaseModel):
    type: Literal["Notification"] = Field(alias="Type")
    message: str = Field(alias="Message")


class TestEventEnvelope(BaseModel):
    event: Literal["s3:TestEvent"] = Field(alias="Event")
    bucket: Optional[str] = Field(default=None, alias="Bucket")
    service: Optional[str] = Field(default=None, alias="Service")
    time: Optional[str] = Field(default=None, alias="Time")


class EventBridgeBucket(BaseModel):
    name: str = Field(min_length=1)


class EventBridgeDetail(BaseModel):
    bucket: EventBridgeBucket
    s3_object: S3ObjectRef = Field(alias="object")


class CloudTrailParameters(BaseModel):
    bucket_name: str = Field(alias="bucketName", min_length=1)
    key: str = Field(min_length=1)


class CloudTrailDetail(BaseModel):
    request_parameters: CloudTrailParameters = Field(alias="requestParameters")


class DetailEnvelope(BaseModel):
    detail: Union[EventBridgeDetail, CloudTrailDetail]


# 解析结果

class StorageObjectEvent(BaseModel):
    """单个对象事件

    key 已完成URL解码
    """

    model_config = ConfigDict(frozen=True)

    key: str
    bucket: Optional[str] = None
    size: Optional[int] = None
    event_name: Optional[str] = None

    @property
    def is_creation(self) -> bool:
        # EventBridge事件不带eventName，按对象创建处理
        return self.event_name is None or self.event_name.startswith(OBJECT_CREATED_PREFIX)


class S3RecordsNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    events: list[StorageObjectEvent] = Field(default_factory=list)
    source: str = "s3"


class TestNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket: Optional[str] = None
    service: Optional[str] = None
    time: Optional[str] = None


class UnrecognizedNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str = "unknown"


Notification = Union[S3RecordsNotification, TestNotification, UnrecognizedNotification]


def decode_object_key(raw_key: str) -> str:
    """解码事件中的对象键

    S3事件中的键经过表单编码，空格写作 ``+``；解码失败时返回原始键
    """
    try:
        return unquote(raw_key.replace("+", "%20"), errors="strict")
    except UnicodeDecodeError:
        logger.warning(f"对象键解码失败，使用原始键: {raw_key}")
        return raw_key


def _parse_test(payload: dict[str, Any]) -> Notification:
    envelope = TestEventEnvelope.model_validate(payload)
    return TestNotification(bucket=envelope.bucket, service=envelope.service, time=envelope.time)


def _parse_records(payload: dict[str, Any], source: str = "s3") -> Notification:
    envelope = RecordsEnvelope.model_validate(payload)

    events = []
    for raw_record in envelope.records:
        try:
            record = S3EventRecord.model_validate(raw_record)
        except ValidationError as e:
            logger.warning(f"事件记录格式错误，跳过: {raw_record!r}: {e.error_count()} 个错误")
            continue

        events.append(StorageObjectEvent(
            key=decode_object_key(record.s3.s3_object.key),
            bucket=record.s3.bucket.name,
            size=record.s3.s3_object.size,
            event_name=record.event_name,
        ))
    return S3RecordsNotification(events=events, source=source)


def _parse_sns(payload: dict[str, Any]) -> Notification:
    envelope = SnsEnvelope.model_validate(payload)
    try:
        inner = json.loads(envelope.message)
    except json.JSONDecodeError:
        return UnrecognizedNotification(kind="Notification")
    if not isinstance(inner, dict):
        return UnrecognizedNotification(kind="Notification")

    for parser in (_parse_test, lambda body: _parse_records(body, source="sns")):
        try:
            return parser(inner)
        except ValidationError:
            continue
    return UnrecognizedNotification(kind="Notification")


def _parse_detail(payload: dict[str, Any]) -> Notification:
    detail = DetailEnvelope.model_validate(payload).detail

    # EventBridge中的键未经表单编码，不做解码
    if isinstance(detail, EventBridgeDetail):
        event = StorageObjectEvent(
            key=detail.s3_object.key,
            bucket=detail.bucket.name,
            size=detail.s3_object.size,
        )
    else:
        event = StorageObjectEvent(
            key=detail.request_parameters.key,
            bucket=detail.request_parameters.bucket_name,
        )
    return S3RecordsNotification(events=[event], source="eventbridge")


ENVELOPE_PARSERS: tuple[Callable[[dict[str, Any]], Notification], ...] = (
    _parse_test,
    _parse_records,
    _parse_sns,
    _parse_detail,
)


def parse_notification(body: str) -> Notification:
    """解析队列消息体

    依次尝试每种信封，全部校验失败时返回 UnrecognizedNotification

    Args:
        body: 原始消息体

    Returns:
        Notification: 解析结果

    Raises:
        NotificationParseError: 消息体不是JSON对象
    """
    try:
        payload = json.loads(body)
    except (TypeError, json.JSONDecodeError) as e:
        raise NotificationParseError(f"消息体不是合法JSON: {e}") from e

    if not isinstance(payload, dict):
        raise NotificationParseError("消息体不是JSON对象")

    for parser in ENVELOPE_PARSERS:
        try:
            return parser(payload)
        except ValidationError:
            continue

    kind = payload.get("Event") or payload.get("Type") or payload.get("detail-type") or "unknown"
    return UnrecognizedNotification(kind=str(kind))
