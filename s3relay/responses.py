# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Responses sent back to the client.

Rejected requests get fixed XML bodies that mimic what S3 and IAM return,
so AWS SDKs surface a familiar error.  They are byte-for-byte constant;
nothing about the rejected request is echoed back.  Accepted requests get
the upstream response relayed as-is.
"""

import httpx
from werkzeug.wrappers import Response

from s3relay.headers import HOP_BY_HOP_HEADERS, remove_headers
from s3relay.types import VerifyStatus


UNSIGNED_ERROR = """\
<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<Error>
    <Code>AccessDenied</Code>
    <Message>Unauthenticated requests are not allowed for this api</Message>
</Error>"""

VALIDATION_ERROR = """\
<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<ErrorResponse xmlns="https://iam.amazonaws.com/doc/2010-05-08/">
  <Error>
    <Type>Sender</Type>
    <Code>SignatureDoesNotMatch</Code>
    <Message>Signature validation failed.</Message>
  </Error>
  <RequestId>0300D815-9252-41E5-B587-F189759A21BF</RequestId>
</ErrorResponse>"""

ERROR_HEADERS = {
    "Content-Type": "application/xml",
    "Cache-Control": "max-age=0, no-cache, no-store",
}


def denied_response(status: VerifyStatus) -> Response:
    """Build the 403 response for a failed verification.

    Args:
        status: SIGNATURE_MISSING or SIGNATURE_INVALID.

    Returns:
        403 response with the matching XML body.

    Raises:
        ValueError: If status is OK.
    """
    if status is VerifyStatus.SIGNATURE_MISSING:
        body = UNSIGNED_ERROR
    elif status is VerifyStatus.SIGNATURE_INVALID:
        body = VALIDATION_ERROR
    else:
        raise ValueError(f"No error response for {status}")
    # Response would append "; charset=utf-8" to a bare mimetype
    response = Response(body.encode("utf-8"), status=403)
    for name, value in ERROR_HEADERS.items():
        response.headers[name] = value
    return response


def relay_response(upstream: httpx.Response) -> Response:
    """Wrap a streamed upstream response for the WSGI layer.

    Status, headers and body are passed through unchanged apart from
    hop-by-hop headers, which belong to the upstream connection.  The body
    is relayed as raw bytes so any content encoding stays intact.  The
    upstream response is closed when the WSGI server is done with it.
    """
    headers = remove_headers(
        upstream.headers.multi_items(), HOP_BY_HOP_HEADERS
    )
    response = Response(
        upstream.iter_raw(),
        status=upstream.status_code,
        headers=headers,
    )
    if "content-type" not in upstream.headers:
        # Response adds a default mimetype when none is given
        response.headers.pop("Content-Type", None)
    response.call_on_close(upstream.close)
    return response
