import logging
import math

import pytest

from routewire.binding import ParameterBinder, RouteParamDescriptor
from routewire.exceptions import HttpError, PayloadTooLargeError
from routewire.markers import ParamSource
from routewire.request import Request


def descriptor(
    index: int,
    source: ParamSource,
    key: str | None = None,
    declared_type: object = None,
) -> RouteParamDescriptor:
    return RouteParamDescriptor(
        index=index,
        name=key or source.value,
        source=source,
        key=key,
        declared_type=declared_type,
    )


class TestDescriptor:
    def test_path_and_should_cast(self) -> None:
        by_key = descriptor(0, ParamSource.QUERY, "page", int)
        whole = descriptor(1, ParamSource.QUERY)
        body_field = descriptor(2, ParamSource.BODY, "name", str)

        assert by_key.path == ("req", "query", "page")
        assert by_key.should_cast is True
        assert whole.path == ("req", "query")
        assert whole.should_cast is False
        assert body_field.should_cast is False


class TestExtract:
    @pytest.mark.asyncio
    async def test_binds_params_query_and_headers(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("GET", "/users/7?page=2&tag=a&tag=b", headers={"X-Trace": "abc"})
        request.params = {"id": "7"}

        values = await binder.bind(
            [
                descriptor(0, ParamSource.PARAMS, "id", int),
                descriptor(1, ParamSource.QUERY, "page", int),
                descriptor(2, ParamSource.QUERY, "tag", list[str]),
                descriptor(3, ParamSource.HEADERS, "x-trace", str),
            ],
            request,
        )

        assert values == [7, 2, ["a", "b"], "abc"]

    @pytest.mark.asyncio
    async def test_missing_values_are_none(self) -> None:
        binder = ParameterBinder(strict=True)
        request = Request.from_url("GET", "/users")

        values = await binder.bind(
            [
                descriptor(0, ParamSource.PARAMS, "id", int),
                descriptor(1, ParamSource.QUERY, "page", int),
                descriptor(2, ParamSource.HEADERS, "authorization", str),
            ],
            request,
        )

        assert values == [None, None, None]

    @pytest.mark.asyncio
    async def test_headers_are_case_insensitive(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("GET", "/", headers={"Content-Language": "fr"})

        values = await binder.bind([descriptor(0, ParamSource.HEADERS, "CONTENT-LANGUAGE", str)], request)

        assert values == ["fr"]

    @pytest.mark.asyncio
    async def test_whole_sources_and_request(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("GET", "/?q=1")

        query, req, request_logger = await binder.bind(
            [
                descriptor(0, ParamSource.QUERY),
                descriptor(1, ParamSource.REQ),
                descriptor(2, ParamSource.LOGGER),
            ],
            request,
        )

        assert query == {"q": "1"}
        assert req is request
        assert isinstance(request_logger, logging.LoggerAdapter)
        assert request_logger.extra == {"source": None, "method": "GET", "path": "/"}

    @pytest.mark.asyncio
    async def test_lenient_cast_failure_keeps_nan(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("GET", "/users/abc")
        request.params = {"id": "abc"}

        (value,) = await binder.bind([descriptor(0, ParamSource.PARAMS, "id", int)], request)

        assert math.isnan(value)


class TestBody:
    @pytest.mark.asyncio
    async def test_body_and_nested_field(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("POST", "/users", json={"user": {"name": "Ada"}, "count": "3"})

        body, name, count, missing = await binder.bind(
            [
                descriptor(0, ParamSource.BODY),
                descriptor(1, ParamSource.BODY, "user.name", str),
                descriptor(2, ParamSource.BODY, "count", int),
                descriptor(3, ParamSource.BODY, "user.email", str),
            ],
            request,
        )

        assert body == {"user": {"name": "Ada"}, "count": "3"}
        assert name == "Ada"
        assert count == "3"
        assert missing is None

    @pytest.mark.asyncio
    async def test_body_is_parsed_once(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("POST", "/", json={"a": 1})
        descriptors = [descriptor(0, ParamSource.BODY)]

        (first,) = await binder.bind(descriptors, request)
        (second,) = await binder.bind(descriptors, request)

        assert first is second

    @pytest.mark.asyncio
    async def test_body_ignored_for_get(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("GET", "/", json={"a": 1})

        assert await binder.bind([descriptor(0, ParamSource.BODY)], request) == [None]

    @pytest.mark.asyncio
    async def test_body_ignored_without_json_content_type(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("POST", "/", body=b'{"a": 1}', headers={"content-type": "text/plain"})

        assert await binder.bind([descriptor(0, ParamSource.BODY)], request) == [None]

    @pytest.mark.asyncio
    async def test_payload_too_large(self) -> None:
        binder = ParameterBinder(max_body_size=8)
        request = Request.from_url("POST", "/", json={"name": "too long"})

        with pytest.raises(PayloadTooLargeError) as exc_info:
            await binder.bind([descriptor(0, ParamSource.BODY)], request)

        assert exc_info.value.status == 413
        assert "exceeds maximum allowed size (8 bytes)" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_strict_malformed_json(self) -> None:
        binder = ParameterBinder(strict=True)
        request = Request.from_url("POST", "/", body=b"{bad", headers={"content-type": "application/json"})

        with pytest.raises(HttpError) as exc_info:
            await binder.bind([descriptor(0, ParamSource.BODY)], request)

        assert exc_info.value.status == 400
        assert exc_info.value.message.startswith("Failed to parse JSON body:")

    @pytest.mark.asyncio
    async def test_lenient_malformed_json_leaves_body_empty(self) -> None:
        binder = ParameterBinder()
        request = Request.from_url("POST", "/", body=b"{bad", headers={"content-type": "application/json"})

        assert await binder.bind([descriptor(0, ParamSource.BODY)], request) == [None]

    @pytest.mark.asyncio
    async def test_lazy_body_reader(self) -> None:
        calls: list[int] = []

        async def receive() -> bytes:
            calls.append(1)
            return b'{"a": 1}'

        binder = ParameterBinder()
        request = Request(
            method="post",
            path="/",
            headers={"content-type": "application/json"},  # type: ignore[arg-type]
            receive=receive,
        )

        assert await binder.bind([descriptor(0, ParamSource.BODY, "a", int)], request) == [1]
        assert await request.json() == {"a": 1}
        assert calls == [1]
