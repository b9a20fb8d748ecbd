import pytest

from main import classify_content, proxy_url, rewrite_hls_line, rewrite_m3u8_content, rewrite_vtt

TARGET = "https://cdn.example/videos/index.m3u8"


@pytest.mark.parametrize(
    "content_type,url,expected",
    [
        ("text/vtt; charset=utf-8", "https://cdn.example/subs.vtt", "vtt"),
        ("application/vnd.apple.mpegurl", TARGET, "hls"),
        ("application/x-mpegURL", TARGET, "hls"),
        ("video/MP2T", "https://cdn.example/seg1.ts", "hls"),
        ("audio/mpegurl", TARGET, "hls"),
        ("audio/x-mpegurl", TARGET, "hls"),
        ("text/html", TARGET, "hls"),
        ("text/html", "https://cdn.example/seg1.ts", "hls"),
        ("text/html", "https://cdn.example/page", "binary"),
        ("text/plain", TARGET, "binary"),
        ("image/jpeg", "https://cdn.example/thumb.jpg", "binary"),
    ],
)
def test_classify_content(content_type, url, expected):
    assert classify_content(content_type, url) == expected


def test_proxy_url_matches_encode_uri_component():
    assert proxy_url("https://cdn.example/a b/(1)!.ts?x=1&y=~") == (
        "/fetch?url=https%3A%2F%2Fcdn.example%2Fa%20b%2F(1)!.ts%3Fx%3D1%26y%3D~"
    )


@pytest.mark.parametrize("line", ["#EXT-X-VERSION:3", "#EXTINF:10.0,", "", "   "])
def test_tags_and_blank_lines_pass_through(line):
    assert rewrite_hls_line(line, TARGET) == line


@pytest.mark.parametrize(
    "line,expected",
    [
        ("https://cdn.example/seg1.ts", "https://cdn.example/seg1.ts"),
        ("HTTP://CDN.EXAMPLE/seg1.ts", "HTTP://CDN.EXAMPLE/seg1.ts"),
        ("ftp://files.example/seg1.ts", "ftp://files.example/seg1.ts"),
        ("//edge.example/seg1.ts", "//edge.example/seg1.ts"),
        ("seg1.ts", "https://cdn.example/videos/seg1.ts"),
        ("/seg1.ts", "https://cdn.example/videos/seg1.ts"),
        ("./seg1.ts", "https://cdn.example/videos/seg1.ts"),
        ("720p/index.m3u8?token=abc", "https://cdn.example/videos/720p/index.m3u8?token=abc"),
    ],
)
def test_resource_lines_are_proxied(line, expected):
    assert rewrite_hls_line(line, TARGET) == proxy_url(expected)


def test_playlist_keeps_line_structure():
    playlist = "#EXTM3U\n#EXT-X-TARGETDURATION:10\n\n#EXTINF:10.0,\nseg1.ts\n#EXT-X-ENDLIST\n"
    rewritten = rewrite_m3u8_content(playlist, TARGET).split("\n")

    assert len(rewritten) == len(playlist.split("\n"))
    assert rewritten[:4] == ["#EXTM3U", "#EXT-X-TARGETDURATION:10", "", "#EXTINF:10.0,"]
    assert rewritten[4] == proxy_url("https://cdn.example/videos/seg1.ts")
    assert rewritten[5:] == ["#EXT-X-ENDLIST", ""]


def test_vtt_without_images_is_unchanged():
    vtt = "WEBVTT\n\n00:00:00.000 --> 00:00:02.000\nHello there.\n"
    assert rewrite_vtt(vtt, "https://host/path/captions.vtt") == vtt


def test_vtt_resolves_each_distinct_image():
    vtt = "WEBVTT\n\nsprite001.jpg#xywh=0,0,1,1\nsprite002.jpg#xywh=0,0,1,1\nsprite001.jpg#xywh=1,0,1,1\n"
    rewritten = rewrite_vtt(vtt, "https://host/path/thumbs.vtt")

    first = proxy_url("https://host/path/sprite001.jpg")
    second = proxy_url("https://host/path/sprite002.jpg")
    assert rewritten.count(first) == 2
    assert rewritten.count(second) == 1
    assert "sprite00" not in rewritten.replace(first, "").replace(second, "")
