from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
import httpx
from urllib.parse import quote, urlparse
from types import MappingProxyType
import logging
import asyncio
import os
import re
import time
from typing import Mapping, Optional, Union

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))

# Configure logging
logging.basicConfig(level=LOG_LEVEL,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("stream_proxy")

# Browser profile sent on every upstream fetch. Bound to a single provider.
UPSTREAM_HEADERS = MappingProxyType({
    "Accept": "*/*",
    "Accept-Encoding": "gzip, deflate, br, zstd",
    "Accept-Language": "en-US,en;q=0.5",
    "origin": "https://megacloud.tv",
    "Referer": "https://megacloud.tv/",
    "Sec-Ch-Ua": '"Chromium";v="134", "Not:A-Brand";v="24", "Brave";v="134"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "cross-site",
    "Sec-Gpc": "1",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
})

CORS_HEADERS = MappingProxyType({
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "3600",
})

HLS_CONTENT_TYPES = (
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "video/mp2t",
    "audio/mpegurl",
    "audio/x-mpegurl",
)

PROXY_PATH = "/fetch"
PLAYLIST_MARKER = "#EXTM3U"
TS_SYNC_BYTE = 0x47
# Same unreserved set as JavaScript's encodeURIComponent
URL_SAFE_CHARS = "!~*'()"

ABSOLUTE_URL_RE = re.compile(r"^(?:(?:(?:https?|ftp):)?//)[^\s/$.?#].[^\s]*$", re.IGNORECASE)
VTT_IMAGE_RE = re.compile(r".+?\.(?:jpg)+")

app = FastAPI(title="Stream Fetch Proxy")

# The overall deadline is enforced by FETCH_TIMEOUT in fetch_upstream
client = httpx.AsyncClient(
    timeout=httpx.Timeout(FETCH_TIMEOUT),
    follow_redirects=True,
    limits=httpx.Limits(max_keepalive_connections=100, max_connections=200)
)

@app.on_event("shutdown")
async def shutdown_event():
    await client.aclose()

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    logger.info(f"<-- {request.method} {request.url.path}")
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    logger.info(f"--> {request.method} {request.url.path} {response.status_code} {elapsed:.0f}ms")
    return response

def proxy_url(target: str) -> str:
    """Build a self-referential proxy URL for target."""
    return f"{PROXY_PATH}?url={quote(target, safe=URL_SAFE_CHARS)}"

def sibling_url(url: str, path: str) -> str:
    """Replace the last path segment of url with path."""
    if not path.startswith("/"):
        path = "/" + path
    return url.rsplit("/", 1)[0] + path

def classify_content(content_type: str, url: str) -> str:
    """
    Decide how an upstream payload is handled: "vtt", "hls" or "binary".
    """
    content_type = content_type.lower()

    if "text/vtt" in content_type:
        return "vtt"
    if any(marker in content_type for marker in HLS_CONTENT_TYPES):
        return "hls"
    # Some hosts serve playlists and segments as HTML
    if "text/html" in content_type and (url.endswith(".m3u8") or url.endswith(".ts")):
        return "hls"
    return "binary"

def rewrite_vtt(content: str, url: str) -> str:
    """
    Point thumbnail images referenced by VTT cues back at this proxy.

    Each distinct filename is resolved once against the directory of the
    VTT file and every occurrence of it is substituted.
    """
    filenames = []
    for match in VTT_IMAGE_RE.finditer(content):
        if match.group(0) not in filenames:
            filenames.append(match.group(0))

    for filename in filenames:
        content = content.replace(filename, proxy_url(sibling_url(url, filename)))
    return content

def rewrite_hls_line(line: str, url: str) -> str:
    if line.startswith("#") or not line.strip():
        return line

    if line.startswith("."):
        line = line[1:]

    if ABSOLUTE_URL_RE.match(line):
        return proxy_url(line)
    return proxy_url(sibling_url(url, line))

def rewrite_m3u8_content(content: str, url: str) -> str:
    """
    Rewrite every resource line of a playlist to be proxied through this service.
    """
    return "\n".join(rewrite_hls_line(line, url) for line in content.split("\n"))

async def fetch_upstream(url: str, headers: Mapping[str, str]) -> httpx.Response:
    """Fetch url with the given headers, cancelling the whole call after FETCH_TIMEOUT."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid URL: {url}")

    return await asyncio.wait_for(client.get(url, headers=headers), timeout=FETCH_TIMEOUT)

def error_response(status_code: int, error: str, url: Optional[str]) -> JSONResponse:
    return JSONResponse(
        content={"message": "Request failed", "error": error, "url": url},
        status_code=status_code,
        headers=dict(CORS_HEADERS)
    )

@app.get("/")
def read_root():
    """Root endpoint with usage instructions."""
    return PlainTextResponse(
        "This is the proxy to use it after the url add /fetch?url=",
        headers=dict(CORS_HEADERS)
    )

@app.get(PROXY_PATH)
async def fetch_proxy(url: Optional[str] = None, ref: Optional[str] = None):
    """
    Fetch the target URL and rewrite playlists and captions to point back at the proxy.
    """
    if not url:
        return JSONResponse(
            content={"error": "No URL provided"},
            status_code=400,
            headers=dict(CORS_HEADERS)
        )

    if ref:
        logger.debug(f"Referrer supplied for {url}: {ref}")

    try:
        response = await fetch_upstream(url, UPSTREAM_HEADERS)

        if response.status_code == 403:
            logger.error(f"403 Forbidden - Server denied access to {url}")
            return JSONResponse(
                content={
                    "message": "Access denied by target server",
                    "error": "The streaming server returned a 403 Forbidden error",
                    "headers": dict(UPSTREAM_HEADERS),
                },
                status_code=403,
                headers=dict(CORS_HEADERS)
            )

        content_type = response.headers.get("content-type") or "text/plain"
        kind = classify_content(content_type, url)
        body: Union[str, bytes]

        if kind == "vtt":
            body = rewrite_vtt(response.text, url)
        elif kind == "hls":
            if not response.text.startswith(PLAYLIST_MARKER):
                # Not a playlist, likely an error page or a mislabeled segment
                return Response(
                    content=response.content,
                    status_code=response.status_code,
                    headers={**CORS_HEADERS, "Content-Type": content_type}
                )
            body = rewrite_m3u8_content(response.text, url)
        else:
            body = response.content
            if body and body[0] == TS_SYNC_BYTE:
                content_type = "video/mp2t"

        return Response(
            content=body,
            status_code=response.status_code,
            headers={**CORS_HEADERS, "Content-Type": content_type}
        )

    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        logger.error(f"Timed out fetching {url}: {e!r}")
        return error_response(504, "Request timed out", url)
    except httpx.RequestError as e:
        logger.error(f"Error fetching {url}: {str(e)}")
        return error_response(502, "Network error when trying to fetch resource", url)
    except Exception as e:
        logger.exception(f"Error in proxy: {str(e)}")
        return error_response(500, str(e), url)

@app.options(PROXY_PATH)
async def options_handler():
    """Handle CORS preflight requests."""
    return Response(status_code=204, headers=dict(CORS_HEADERS))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host=HOST, port=PORT, log_level=LOG_LEVEL.lower())
