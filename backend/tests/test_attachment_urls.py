import pytest

from booking_chat.utils.attachments import guess_extension, is_attachment, mime_from_url


@pytest.mark.parametrize(
    "body,expected",
    [
        ("https://media.example.com/chat-images/1/2/a.jpg", True),
        ("/attachments/chat-images/1/2/169-abc.png", True),
        ("https://cdn.example.com/storage/v1/object/public/x", True),
        ("http://example.com/photo.WEBP?x=1", True),
        ("See https://example.com/venue for directions", False),
        ("photo.jpg", False),
        ("", False),
        (None, False),
    ],
)
def test_is_attachment(body, expected):
    assert is_attachment(body) is expected


def test_guess_extension_follows_content_type():
    assert guess_extension("Stage Plot.JPEG", "image/jpeg") == ".jpeg"
    assert guess_extension("Stage Plot.JPEG", "image/png") == ".png"
    assert guess_extension("x.exe", "image/png") == ".png"
    assert guess_extension("shot.PNG", "image/png") == ".png"
    assert guess_extension("scan.tiff", "image/tiff") == ""
    assert guess_extension("scan.gif", "image/x-unknown") == ".gif"
    assert guess_extension(None, "image/webp; q=1") == ".webp"
    assert guess_extension("noext", "image/gif") == ".gif"
    assert guess_extension(None, None) == ""


def test_mime_from_url():
    assert mime_from_url("https://x/chat-images/a.PNG?sig=1") == "image/png"
    assert mime_from_url("/attachments/b.jpeg") == "image/jpeg"
    assert mime_from_url("/attachments/b.bin") is None
    assert mime_from_url(None) is None
