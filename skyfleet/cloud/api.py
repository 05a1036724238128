"""Read-side EC2 calls used by accounting and readiness polling.

Raw boto responses are turned into ``InstanceView`` / ``SpotRequestView``
here so nothing above this module touches EC2 dictionaries.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from skyfleet.classify import tags_from_aws
from skyfleet.constants import DESCRIBE_ATTEMPTS, SPOT_UNSUPPORTED_CODES, FleetTag
from skyfleet.errors import CloudAccessError
from skyfleet.model import InstanceId, InstanceView, SpotRequestId, SpotRequestView

if TYPE_CHECKING:
    from .clients import Ec2Connection

log = logger.bind(component="ec2-api")

_INSTANCE_NOT_FOUND = "InvalidInstanceID.NotFound"
_INSTANCE_MALFORMED = "InvalidInstanceID.Malformed"
_SPOT_REQUEST_NOT_FOUND = "InvalidSpotInstanceRequestID.NotFound"


class CloudApi(Protocol):
    async def list_instances(self) -> Sequence[InstanceView]: ...

    async def list_spot_requests(
        self, image_id: str | None = None, server_url: str | None = None,
    ) -> Sequence[SpotRequestView]: ...

    async def describe_instance(self, instance_id: InstanceId) -> InstanceView | None: ...

    async def describe_spot_request(self, request_id: SpotRequestId) -> SpotRequestView | None: ...


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def _is_instance_not_found(exc: BaseException) -> bool:
    return error_code(exc) == _INSTANCE_NOT_FOUND


def access_error(operation: str, exc: ClientError | BotoCoreError) -> CloudAccessError:
    code = error_code(exc) or None
    return CloudAccessError(operation, str(exc), code)


# =============================================================================
# Response parsing
# =============================================================================


def parse_instance(raw: dict[str, Any]) -> InstanceView:
    return InstanceView(
        id=raw["InstanceId"],
        image_id=raw.get("ImageId", ""),
        state=raw.get("State", {}).get("Name", ""),
        tags=tags_from_aws(raw.get("Tags")),
        launch_time=raw.get("LaunchTime"),
        spot_request_id=raw.get("SpotInstanceRequestId"),
    )


def parse_spot_request(raw: dict[str, Any]) -> SpotRequestView:
    return SpotRequestView(
        id=raw["SpotInstanceRequestId"],
        state=raw.get("State", ""),
        status=raw.get("Status", {}).get("Code", ""),
        instance_id=raw.get("InstanceId") or None,
        launch_image_id=raw.get("LaunchSpecification", {}).get("ImageId", ""),
        tags=tags_from_aws(raw.get("Tags")),
    )


def spot_request_filters(image_id: str | None, server_url: str | None) -> list[dict[str, Any]]:
    """Server-side filters narrowing the spot request listing to ours."""
    filters: list[dict[str, Any]] = []
    if image_id is not None:
        filters.append({"Name": "launch.image-id", "Values": [image_id]})
    if server_url is not None:
        filters.append({"Name": f"tag:{FleetTag.SERVER_URL}", "Values": [server_url]})
    filters.append({"Name": "tag-key", "Values": [FleetTag.NODE_TYPE.value]})
    return filters


# =============================================================================
# API
# =============================================================================


class Ec2Api:
    """``CloudApi`` backed by a shared EC2 client."""

    def __init__(
        self,
        connection: Ec2Connection,
        describe_attempts: int = DESCRIBE_ATTEMPTS,
        retry_wait: float = 1.0,
    ) -> None:
        self._connection = connection
        self._describe_attempts = describe_attempts
        self._retry_wait = retry_wait

    async def _client(self) -> Any:
        return await self._connection.get()

    async def list_instances(self) -> list[InstanceView]:
        client = await self._client()
        instances: list[InstanceView] = []
        kwargs: dict[str, Any] = {}
        try:
            while True:
                response = await client.describe_instances(**kwargs)
                for reservation in response.get("Reservations", []):
                    instances.extend(parse_instance(i) for i in reservation.get("Instances", []))
                token = response.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except (ClientError, BotoCoreError) as e:
            raise access_error("DescribeInstances", e) from e
        return instances

    async def list_spot_requests(
        self, image_id: str | None = None, server_url: str | None = None,
    ) -> list[SpotRequestView]:
        client = await self._client()
        filters = spot_request_filters(image_id, server_url)
        requests: list[SpotRequestView] = []
        kwargs: dict[str, Any] = {"Filters": filters}
        try:
            while True:
                response = await client.describe_spot_instance_requests(**kwargs)
                requests.extend(
                    parse_spot_request(r) for r in response.get("SpotInstanceRequests", [])
                )
                token = response.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except ClientError as e:
            if error_code(e) in SPOT_UNSUPPORTED_CODES:
                log.debug("Spot requests not supported by endpoint: {err}", err=e)
                return []
            raise access_error("DescribeSpotInstanceRequests", e) from e
        except BotoCoreError as e:
            raise access_error("DescribeSpotInstanceRequests", e) from e
        return requests

    async def describe_instance(self, instance_id: InstanceId) -> InstanceView | None:
        """Current view of one instance, ``None`` if EC2 does not know it.

        Freshly launched instances can be briefly unknown to describe calls,
        so not-found answers are retried before giving up.
        """
        client = await self._client()

        @retry(
            stop=stop_after_attempt(self._describe_attempts),
            wait=wait_exponential(multiplier=self._retry_wait, max=10),
            retry=retry_if_exception(_is_instance_not_found),
            reraise=True,
        )
        async def _describe() -> dict[str, Any]:
            return await client.describe_instances(InstanceIds=[instance_id])

        try:
            response = await _describe()
        except ClientError as e:
            if error_code(e) in (_INSTANCE_NOT_FOUND, _INSTANCE_MALFORMED):
                return None
            raise access_error("DescribeInstances", e) from e
        except BotoCoreError as e:
            raise access_error("DescribeInstances", e) from e

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return parse_instance(raw)
        return None

    async def describe_spot_request(self, request_id: SpotRequestId) -> SpotRequestView | None:
        client = await self._client()
        try:
            response = await client.describe_spot_instance_requests(
                SpotInstanceRequestIds=[request_id],
            )
        except ClientError as e:
            code = error_code(e)
            if code == _SPOT_REQUEST_NOT_FOUND or code in SPOT_UNSUPPORTED_CODES:
                return None
            raise access_error("DescribeSpotInstanceRequests", e) from e
        except BotoCoreError as e:
            raise access_error("DescribeSpotInstanceRequests", e) from e

        for raw in response.get("SpotInstanceRequests", []):
            return parse_spot_request(raw)
        return None
