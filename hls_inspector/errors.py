from typing import Optional


class InspectorError(Exception):
    """Base exception for every condition reported by the inspector."""

    kind = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def context(self) -> dict:
        """Location details needed to find the cause in the original source."""
        return {}

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, **self.context()}


class ParseError(InspectorError):
    """Malformed tag or attribute, missing required attribute, or out-of-context tag."""

    kind = "parse"

    def __init__(self, message: str, *, line: Optional[int] = None, tag: Optional[str] = None):
        self.line = line
        self.tag = tag
        super().__init__(message if line is None else f"line {line}: {message}")

    def context(self) -> dict:
        return {"line": self.line, "tag": self.tag}


class ResolutionError(InspectorError):
    """Undefined variable reference or unresolvable base/relative URI pair."""

    kind = "resolution"

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        tag: Optional[str] = None,
        reference: Optional[str] = None,
    ):
        self.line = line
        self.tag = tag
        self.reference = reference
        super().__init__(message if line is None else f"line {line}: {message}")

    def context(self) -> dict:
        return {"line": self.line, "tag": self.tag, "reference": self.reference}


class FetchError(InspectorError):
    """Network failure or non-success status while fetching a resource."""

    kind = "fetch"

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)

    def context(self) -> dict:
        return {"url": self.url, "status_code": self.status_code}


class RangeNotSatisfiableError(FetchError):
    """The server answered a range request with 416."""


class RangeIgnoredError(FetchError):
    """The server answered a range request with the full resource."""


class DecodeError(InspectorError):
    """Malformed binary data: box sizes, truncated buffers, splice commands, encodings."""

    kind = "decode"

    def __init__(self, message: str, *, box_type: Optional[str] = None, offset: Optional[int] = None):
        self.box_type = box_type
        self.offset = offset
        if box_type is not None and offset is not None:
            message = f"{box_type} box at offset {offset}: {message}"
        elif offset is not None:
            message = f"offset {offset}: {message}"
        super().__init__(message)

    def context(self) -> dict:
        return {"box_type": self.box_type, "offset": self.offset}


class ComputationError(InspectorError):
    """A derived value was requested without the inputs it needs."""

    kind = "computation"
