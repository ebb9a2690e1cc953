import dataclasses

import pytest

from bridge_settings import load_settings


class FakeResponse:
    def __init__(self, status_code=200, text="", content=None, headers=None, cookies=None):
        self.status_code = status_code
        self.text = text
        self.content = content if content is not None else text.encode("utf-8")
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.cookies = dict(cookies or {})


class FakeSession:
    """Stands in for a curl_cffi session: answers from a queue or a handler, records every call."""

    def __init__(self, responses=None, handler=None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.handler(method, url, kwargs) if self.handler else self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def urls(self, fragment=""):
        return [url for _, url, _ in self.calls if fragment in url]


PADDING = "<!-- " + "x" * 12000 + " -->"


def login_page(formhash="fh123", nchash="nc456"):
    return (
        '<form action="index.php?act=seller_login&op=login" method="post">'
        f'<input type="hidden" name="formhash" value="{formhash}" />'
        f"<input type='hidden' name='nchash' value='{nchash}'>"
        '<input type="text" name="seller_name">'
        "</form>"
    )


def transport_page():
    return (
        "<table>"
        "<a href=\"javascript:;\" data-param=\"{id:'7',name:'Standard Shipping',trans_type:'express'}\">use</a>"
        "<a href=\"javascript:;\" data-param=\"{id:'8',name:'Bulky',trans_type:'freight'}\">use</a>"
        "</table>" + PADDING
    )


def spec_page():
    return (
        '<dl nctype="spec_group_dl">'
        '<dt><input type="text" nctype="spec_name" data-param="{id:1}" value="Color" /></dt>'
        '<dd><input type="checkbox" name="sp_val[1][101]" value="Red" />'
        '<input type="checkbox" name="sp_val[1][102]" value="Blue" /></dd>'
        "</dl>"
        '<dl nctype="spec_group_dl">'
        '<dt><input type="text" nctype="spec_name" data-param="{id:2}" value="Size" /></dt>'
        '<dd><input type="checkbox" name="sp_val[2][201]" value="Standard" /></dd>'
        "</dl>" + PADDING
    )


def category_page():
    return (
        "<script>var class_data = ["
        '{"gc_id":"3801","gc_name":"Sports/Outdoors","child":['
        '{"gc_id":"3802","gc_name":"Exercise & Fitness","child":['
        '{"gc_id":"3871","gc_name":"Aquatic Fitness Equipment","child":[]}]}]},'
        '{"gc_id":"1001","gc_name":"Home & Living"}'
        "];</script>"
    )


@pytest.fixture
def settings(tmp_path):
    return dataclasses.replace(
        load_settings(),
        base_url="https://www.manjarosupply.com/shop",
        cookie_file=tmp_path / "cookies.json",
        captcha_file=tmp_path / "captcha.png",
        diagnostics_dir=tmp_path / "diagnostics",
        categories_file=tmp_path / "categories.json",
        db_path=tmp_path / "migrator.db",
        qwen_api_key="",
        default_category_id="3871",
        default_category_name="Sports/Outdoors > Exercise & Fitness > Aquatic Fitness Equipment",
        poll_interval=0,
        login_check_interval=0,
        max_poll_attempts=None,
        pacing_delay=0,
    )
