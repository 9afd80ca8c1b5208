"""pprof CPU profile collection and validation."""

import gzip
import logging
import zlib
from typing import Dict, Optional, Type

import httpx
from google.protobuf import descriptor_pb2, descriptor_pool, message, message_factory

from ..core.deadline import Deadline, request_timeout
from ..core.errors import DeadlineExceeded, FetchFailed, InvalidProfile
from ..core.logging import redact_sensitive
from ..core.ports import ProfileFetcher, ProfileValidator
from ..core.types import is_blank

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_TIMEOUT = 45.0
ERROR_PREVIEW_BYTES = 4 * 1024
GZIP_MAGIC = b"\x1f\x8b"

_F = descriptor_pb2.FieldDescriptorProto


def _build_profile_class() -> Type[message.Message]:
    """Declare the subset of perftools.profiles.Profile needed to check structure.

    Fields not declared here are kept as unknown fields by the parser.
    """
    proto = descriptor_pb2.FileDescriptorProto(
        name="cpgo/pprof_profile.proto",
        package="perftools.profiles",
        syntax="proto3",
    )

    value_type = proto.message_type.add(name="ValueType")
    value_type.field.add(name="type", number=1, type=_F.TYPE_INT64, label=_F.LABEL_OPTIONAL)
    value_type.field.add(name="unit", number=2, type=_F.TYPE_INT64, label=_F.LABEL_OPTIONAL)

    sample = proto.message_type.add(name="Sample")
    sample.field.add(name="location_id", number=1, type=_F.TYPE_UINT64, label=_F.LABEL_REPEATED)
    sample.field.add(name="value", number=2, type=_F.TYPE_INT64, label=_F.LABEL_REPEATED)

    location = proto.message_type.add(name="Location")
    location.field.add(name="id", number=1, type=_F.TYPE_UINT64, label=_F.LABEL_OPTIONAL)

    profile = proto.message_type.add(name="Profile")
    profile.field.add(
        name="sample_type", number=1, type=_F.TYPE_MESSAGE, label=_F.LABEL_REPEATED,
        type_name=".perftools.profiles.ValueType",
    )
    profile.field.add(
        name="sample", number=2, type=_F.TYPE_MESSAGE, label=_F.LABEL_REPEATED,
        type_name=".perftools.profiles.Sample",
    )
    profile.field.add(
        name="location", number=4, type=_F.TYPE_MESSAGE, label=_F.LABEL_REPEATED,
        type_name=".perftools.profiles.Location",
    )
    # bytes, not string: pprof string tables may carry non UTF-8 symbol names
    profile.field.add(name="string_table", number=6, type=_F.TYPE_BYTES, label=_F.LABEL_REPEATED)
    profile.field.add(name="duration_nanos", number=10, type=_F.TYPE_INT64, label=_F.LABEL_OPTIONAL)
    profile.field.add(name="period", number=12, type=_F.TYPE_INT64, label=_F.LABEL_OPTIONAL)

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("perftools.profiles.Profile"))


Profile = _build_profile_class()


def with_profile_seconds(url: str, seconds: int) -> httpx.URL:
    """Return the URL with its ``seconds`` query parameter set."""
    return httpx.URL(url).copy_set_param("seconds", str(seconds))


class HTTPProfileFetcher(ProfileFetcher):
    """Collects CPU profiles from remote pprof HTTP endpoints."""

    def __init__(self, timeout: float = DEFAULT_PROFILE_TIMEOUT, http_client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self.client = http_client or httpx.Client(timeout=timeout)

    def fetch_cpu_profile(
        self,
        url: str,
        seconds: int,
        headers: Optional[Dict[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        """Request a single CPU profile sample window.

        Args:
            url: pprof profile endpoint
            seconds: Sample duration, sent as the ``seconds`` query parameter
            headers: Extra request headers; blank names are skipped
            deadline: Run deadline capping the request timeout

        Returns:
            Raw profile bytes

        Raises:
            FetchFailed: On transport errors, non-2xx status or an empty body
            DeadlineExceeded: If the run deadline passed
        """
        if is_blank(url):
            raise FetchFailed("profile url is required")
        if seconds <= 0:
            raise FetchFailed("profile seconds must be positive")

        try:
            profile_url = with_profile_seconds(url, seconds)
        except httpx.InvalidURL as e:
            raise FetchFailed(f"build profile request: {e}") from e
        request_headers = {k: v for k, v in (headers or {}).items() if not is_blank(k)}

        if deadline is not None:
            deadline.check("fetch profile")
        logger.info(
            f"Fetching {seconds}s CPU profile",
            extra={"url": str(profile_url), "headers": redact_sensitive(request_headers)},
        )

        try:
            response = self.client.get(
                profile_url,
                headers=request_headers,
                timeout=request_timeout(deadline, self.timeout),
            )
        except httpx.TimeoutException as e:
            if deadline is not None and deadline.expired():
                raise DeadlineExceeded("deadline exceeded while fetching profile") from e
            raise FetchFailed(f"fetch profile: {e}") from e
        except httpx.HTTPError as e:
            raise FetchFailed(f"fetch profile: {e}") from e

        if not response.is_success:
            preview = response.content[:ERROR_PREVIEW_BYTES].decode("utf-8", errors="replace").strip()
            status = f"{response.status_code} {response.reason_phrase}".strip()
            if preview:
                raise FetchFailed(f"fetch profile: unexpected status {status}: {preview}")
            raise FetchFailed(f"fetch profile: unexpected status {status}")

        if not response.content:
            raise FetchFailed("profile response is empty")
        return response.content


class PprofValidator(ProfileValidator):
    """Ensures profile payloads are valid pprof data with samples."""

    def validate_cpu_profile(self, raw: bytes) -> None:
        if not raw:
            raise InvalidProfile("cpu profile is empty")

        data = raw
        if raw[:2] == GZIP_MAGIC:
            try:
                data = gzip.decompress(raw)
            except (OSError, EOFError, zlib.error) as e:
                raise InvalidProfile(f"decompress cpu profile: {e}") from e

        parsed = Profile()
        try:
            parsed.ParseFromString(data)
        except message.DecodeError as e:
            raise InvalidProfile(f"parse cpu profile: {e}") from e

        _check_structure(parsed)

        if len(parsed.sample) == 0:
            raise InvalidProfile("cpu profile has no samples")


def _check_structure(parsed: message.Message) -> None:
    """Reject profiles that decode but are not internally consistent.

    Raises:
        InvalidProfile: If the string table does not start with "", a value
            type points outside the string table, a sample has a value count
            different from the number of sample types, or a sample references
            a location the profile does not declare
    """
    strings = parsed.string_table
    if len(strings) > 0 and strings[0] != b"":
        raise InvalidProfile("malformed cpu profile: string table must start with an empty string")

    for value_type in parsed.sample_type:
        for index in (value_type.type, value_type.unit):
            if index < 0 or (index > 0 and index >= len(strings)):
                raise InvalidProfile(f"malformed cpu profile: string index {index} out of range")

    location_ids = set()
    for location in parsed.location:
        if location.id == 0:
            raise InvalidProfile("malformed cpu profile: location has zero id")
        location_ids.add(location.id)

    expected_values = len(parsed.sample_type)
    for sample in parsed.sample:
        if len(sample.value) != expected_values:
            raise InvalidProfile(
                f"malformed cpu profile: sample has {len(sample.value)} values, "
                f"expected {expected_values} for the sample types"
            )
        for location_id in sample.location_id:
            if location_id not in location_ids:
                raise InvalidProfile(f"malformed cpu profile: sample references unknown location id {location_id}")
