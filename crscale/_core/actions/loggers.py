"""
Per-object logging and the logging setup of the whole process.

Every message about a specific object carries a reference to that object,
so that it can be prefixed in the text logs (``[namespace/name] message``)
or put into a separate field in the JSON logs, as the log parsers prefer.
"""
import copy
import enum
import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any, TextIO

from pythonjsonlogger.core import RESERVED_ATTRS
from pythonjsonlogger.json import JsonFormatter

from crscale._cogs.helpers import typedefs
from crscale._cogs.structs import references

logger = logging.getLogger('crscale.objects')

# The record attribute with the object reference, as put by `ObjectLogger`.
REF_ATTR = 'k8s_ref'

# A key for object references in JSON logs, as seen by the log parsers.
DEFAULT_JSON_REFKEY = 'object'

# The upper bounds of the levels for the "severity" field of JSON logs.
SEVERITIES = [
    (logging.DEBUG, 'debug'),
    (logging.INFO, 'info'),
    (logging.WARNING, 'warn'),
    (logging.ERROR, 'error'),
]


class LogFormat(enum.Enum):
    """ Log formats, as specified on CLI. """
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = '-json-'  # not used for formatting, only for detection


def get_severity(levelno: int) -> str:
    for upper, severity in SEVERITIES:
        if levelno <= upper:
            return severity
    return 'fatal'


class ObjectFormatter(logging.Formatter):
    pass


class ObjectTextFormatter(ObjectFormatter, logging.Formatter):
    pass


class ObjectJsonFormatter(ObjectFormatter, JsonFormatter):
    """ JSON logs with the object reference under its own key, and the severity. """

    def __init__(
            self,
            *args: Any,
            refkey: str | None = None,
            **kwargs: Any,
    ) -> None:
        reserved_attrs = set(kwargs.pop('reserved_attrs', RESERVED_ATTRS)) | {REF_ATTR}
        kwargs.setdefault('timestamp', True)
        super().__init__(*args, reserved_attrs=reserved_attrs, **kwargs)
        self._refkey: str = refkey or DEFAULT_JSON_REFKEY

    def add_fields(
            self,
            log_record: dict[str, object],
            record: logging.LogRecord,
            message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if hasattr(record, REF_ATTR):
            log_record[self._refkey] = getattr(record, REF_ATTR)
        log_record.setdefault('severity', get_severity(record.levelno))


class ObjectPrefixingMixin(ObjectFormatter):
    def format(self, record: logging.LogRecord) -> str:
        ref = getattr(record, REF_ATTR, None)
        if ref is not None:
            namespace, name = ref.get('namespace'), ref.get('name', '')
            record = copy.copy(record)  # the other handlers must see the original message
            record.msg = f"[{namespace}/{name}] {record.msg}" if namespace else f"[{name}] {record.msg}"
        return super().format(record)


class ObjectPrefixingTextFormatter(ObjectPrefixingMixin, ObjectTextFormatter):
    pass


class ObjectPrefixingJsonFormatter(ObjectPrefixingMixin, ObjectJsonFormatter):
    pass


class ObjectLogger(typedefs.LoggerAdapter):
    """
    A logger/adapter to carry the object identifiers for formatting.

    Constructed by the dispatcher for every reconciliation pass of an object.
    Only the identity of the object is carried, never its body: the body
    is re-read by the reconciler on every pass and can change at any time.
    """

    def __init__(
            self,
            *,
            key: references.ObjectKey,
            resource: references.Resource = references.SCALABLES,
    ) -> None:
        ref = dict(apiVersion=resource.api_version, kind=resource.kind,
                   name=key.name, namespace=key.namespace)
        super().__init__(logger, {REF_ATTR: ref})

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        # The stdlib adapter replaces the call's extras with its own; we merge them.
        kwargs["extra"] = dict(self.extra or {}) | kwargs.get('extra', {})
        return msg, kwargs


# Our own handlers are replaced on re-configuration (e.g. in the CLI tests, where
# the previous handlers can point to the closed stderr interceptors of click's runner).
if TYPE_CHECKING:
    class _CrscaleStreamHandler(logging.StreamHandler[TextIO]):
        pass
else:
    class _CrscaleStreamHandler(logging.StreamHandler):
        pass


def configure(
        debug: bool | None = None,
        verbose: bool | None = None,
        quiet: bool | None = None,
        log_format: LogFormat = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> None:
    handler = _CrscaleStreamHandler()
    handler.setFormatter(make_formatter(log_format=log_format, log_prefix=log_prefix,
                                        log_refkey=log_refkey))
    root = logging.getLogger()
    root.handlers[:] = [h for h in root.handlers if not isinstance(h, _CrscaleStreamHandler)]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug or verbose else logging.WARNING if quiet else logging.INFO)

    # The event loop's own messages are only shown in the debug mode.
    asyncio_logger = logging.getLogger('asyncio')
    asyncio_logger.propagate = bool(debug)
    if not debug:
        asyncio_logger.handlers[:] = [logging.NullHandler()]


def make_formatter(
        log_format: LogFormat | str = LogFormat.FULL,
        log_prefix: bool | None = False,
        log_refkey: str | None = None,
) -> ObjectFormatter:
    """
    Choose the formatter for the format and the prefixing mode.

    By default (``log_prefix=None``), the text logs are prefixed
    with the object references, and the JSON logs are not.
    """
    if log_format is LogFormat.JSON:
        json_cls = ObjectPrefixingJsonFormatter if log_prefix else ObjectJsonFormatter
        return json_cls(refkey=log_refkey)

    if isinstance(log_format, LogFormat):
        fmt = log_format.value
    elif isinstance(log_format, str):
        fmt = log_format
    else:
        raise ValueError(f"Unsupported log format: {log_format!r}")
    text_cls = ObjectTextFormatter if log_prefix is False else ObjectPrefixingTextFormatter
    return text_cls(fmt)
