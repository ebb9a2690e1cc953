import dataclasses
import json

import pytest
from curl_cffi import requests

from conftest import FakeResponse, FakeSession, category_page, login_page, spec_page, transport_page
from listing_models import ShippingTemplate, SpecInfo, SpecValue
from manjaro_client import (
    AuthState,
    ManjaroClient,
    classify_challenge_response,
    classify_login_response,
    extract_login_tokens,
    is_logged_in_page,
    is_valid_spec_page,
    is_valid_transport_page,
    parse_added_spec_value,
    parse_category_specs,
    parse_class_data,
    parse_transport_templates,
    parse_uploaded_image_name,
)
from manjaro_errors import (
    AuthenticationFailed,
    AuthStateError,
    ChallengeRejected,
    PollCancelled,
    ProtocolError,
    TransientBackendError,
)
from poller import CancelToken

PNG = b"\x89PNG\r\n\x1a\n-captcha-"


# ─── Classifiers / parsers ───────────────────────────────────────────────────


def test_extract_login_tokens():
    tokens = extract_login_tokens(login_page())
    assert tokens.form_token == "fh123"
    assert tokens.challenge_token == "nc456"


@pytest.mark.parametrize(
    "page",
    [
        "<input type=hidden name=formhash value=fh123><input type=hidden name=nchash value=nc456>",
        '<input data-tip="a>b" value="fh123" name="formhash"><INPUT VALUE=nc456 NAME=nchash>',
        "<form><div><input name='nchash' value='nc456'/></div><input value='fh123' name='formhash'/></form>",
    ],
)
def test_extract_login_tokens_from_loose_markup(page):
    tokens = extract_login_tokens(page)
    assert (tokens.form_token, tokens.challenge_token) == ("fh123", "nc456")


def test_extract_login_tokens_missing_nchash():
    with pytest.raises(ProtocolError):
        extract_login_tokens('<input type="hidden" name="formhash" value="fh123">')


@pytest.mark.parametrize("body", ["true", "TRUE", '{"status":"1"}', "1", " 1\n"])
def test_challenge_accepted_markers(body):
    assert classify_challenge_response(body) is True


@pytest.mark.parametrize("body", ["false", "0", '{"status":0}', ""])
def test_challenge_rejected_markers(body):
    assert classify_challenge_response(body) is False


def test_classify_login_response():
    assert classify_login_response(302, "index.php?act=seller_center", "")
    assert classify_login_response(200, "", "<p>登录成功</p>")
    assert classify_login_response(200, "", '<a href="index.php?act=seller_center">')
    assert not classify_login_response(200, "", "<p>wrong password</p>")
    assert not classify_login_response(302, "index.php?act=login", "")


def test_is_logged_in_page():
    assert is_logged_in_page(200, "<html>seller dashboard</html>")
    assert not is_logged_in_page(200, '<form action="index.php?act=seller_login">')
    assert not is_logged_in_page(500, "<html></html>")


def test_validity_rules_need_length_and_marker():
    assert is_valid_transport_page(transport_page())
    assert not is_valid_transport_page("data-param")
    assert not is_valid_transport_page("x" * 2000)
    assert is_valid_spec_page(spec_page())
    assert not is_valid_spec_page(spec_page()[:9000])


def test_parse_transport_templates():
    templates = parse_transport_templates(transport_page())
    assert [(t.id, t.name, t.trans_type) for t in templates] == [
        ("7", "Standard Shipping", "express"),
        ("8", "Bulky", "freight"),
    ]


def test_parse_transport_templates_unquoted_and_reordered():
    body = (
        "<a data-param=\"{id:'9',name:'Sea > Air',trans_type:'sea'}\" title=\"x>y\" href=#>use</a>"
        "<a href=# class=plain>no template</a>"
    )
    assert parse_transport_templates(body) == [ShippingTemplate("9", "Sea > Air", "sea")]


def test_parse_category_specs_loose_markup():
    body = (
        "<dl nctype=spec_group_dl><dt>"
        "<input value=Colour data-param={id:5} nctype=spec_name type=text>"
        "</dt><dd>"
        "<input value=Navy name=sp_val[5][501] TYPE=CHECKBOX data-tip='a>b'>"
        "<input value=ignored name=sp_val[5][502] type=text>"
        "</dd></dl>"
        "<dl class=other><dd><input type=checkbox name=sp_val[9][901] value=Stray></dd></dl>"
    )
    specs = parse_category_specs(body)
    assert specs == [SpecInfo("5", "Colour", (SpecValue("501", "Navy"),))]


def test_parse_category_specs_keeps_page_order():
    specs = parse_category_specs(spec_page())
    assert [(s.attribute_id, s.attribute_name) for s in specs] == [("1", "Color"), ("2", "Size")]
    assert [(v.value_id, v.value_name) for v in specs[0].existing_values] == [("101", "Red"), ("102", "Blue")]
    assert specs[1].find_value("Standard").value_id == "201"


def test_parse_class_data_flattens_tree():
    categories = parse_class_data(category_page())
    by_id = {c.id: c for c in categories}
    assert [c.id for c in categories] == ["3801", "3802", "3871", "1001"]
    assert by_id["3871"].full_path_label == "Sports/Outdoors > Exercise & Fitness > Aquatic Fitness Equipment"
    assert by_id["3871"].display_name == "Aquatic Fitness Equipment"
    assert by_id["1001"].full_path_label == "Home & Living"


@pytest.mark.parametrize(
    "body, expected",
    [
        ("301", "301"),
        (' {"value_id": 302} ', "302"),
        ('{"spv_id": "303"}', "303"),
        ('{"id": 304}', "304"),
        ('{"error": "exists"}', None),
        ("<html>error</html>", None),
    ],
)
def test_parse_added_spec_value(body, expected):
    assert parse_added_spec_value(body) == expected


def test_parse_uploaded_image_name():
    assert parse_uploaded_image_name('{"name": "223_abc.jpg", "thumb": "x"}') == "223_abc.jpg"
    assert parse_uploaded_image_name('{"error": "too big"}') is None
    assert parse_uploaded_image_name("not json") is None


# ─── Login state machine ─────────────────────────────────────────────────────


def _login_responses(login_result):
    return [
        FakeResponse(text=login_page(), cookies={"PHPSESSID": "abc"}),
        FakeResponse(content=PNG),
        FakeResponse(text="true"),
        login_result,
    ]


def test_full_login_flow(settings):
    session = FakeSession(_login_responses(
        FakeResponse(302, headers={"Location": "index.php?act=seller_center"}, cookies={"seller_key": "k"})
    ))
    client = ManjaroClient(settings, session=session)

    client.fetch_login_page()
    assert client.state is AuthState.PAGE_FETCHED
    path = client.fetch_challenge()
    assert path.read_bytes() == PNG
    client.verify_challenge("abcd")
    assert client.state is AuthState.CHALLENGE_VERIFIED
    client.login("seller", "secret", "abcd")

    assert client.state is AuthState.LOGGED_IN
    assert json.loads(settings.cookie_file.read_text()) == {"PHPSESSID": "abc", "seller_key": "k"}

    # every request after the login page carries the session cookie
    for _, _, kwargs in session.calls[1:]:
        assert "PHPSESSID=abc" in kwargs["headers"]["Cookie"]

    _, login_url, login_kwargs = session.calls[3]
    assert login_url.endswith("act=seller_login&op=login")
    assert login_kwargs["allow_redirects"] is False
    assert login_kwargs["data"]["formhash"] == "fh123"
    assert login_kwargs["data"]["nchash"] == "nc456"
    assert login_kwargs["data"]["captcha"] == "abcd"


def test_captcha_check_url_carries_nchash(settings):
    session = FakeSession(_login_responses(FakeResponse(302, headers={"Location": "seller"})))
    client = ManjaroClient(settings, session=session)
    client.fetch_login_page()
    client.fetch_challenge()
    client.verify_challenge("ab12")
    assert "op=makecode" in session.calls[1][1] and "nchash=nc456" in session.calls[1][1]
    assert "op=check" in session.calls[2][1] and "captcha=ab12" in session.calls[2][1]


def test_challenge_before_login_page_is_rejected(settings):
    session = FakeSession()
    client = ManjaroClient(settings, session=session)
    with pytest.raises(AuthStateError):
        client.fetch_challenge()
    with pytest.raises(AuthStateError):
        client.verify_challenge("abcd")
    assert session.calls == []


def test_login_requires_verified_challenge(settings):
    session = FakeSession([FakeResponse(text=login_page()), FakeResponse(content=PNG)])
    client = ManjaroClient(settings, session=session)
    client.fetch_login_page()
    client.fetch_challenge()
    with pytest.raises(AuthStateError):
        client.login("seller", "secret", "abcd")
    assert len(session.calls) == 2


def test_rejected_captcha_keeps_state(settings):
    session = FakeSession([
        FakeResponse(text=login_page()),
        FakeResponse(content=PNG),
        FakeResponse(text="false"),
    ])
    client = ManjaroClient(settings, session=session)
    client.fetch_login_page()
    client.fetch_challenge()
    with pytest.raises(ChallengeRejected):
        client.verify_challenge("zzzz")
    assert client.state is AuthState.CHALLENGE_FETCHED


def test_rejected_login_resets_and_keeps_body(settings):
    session = FakeSession(_login_responses(FakeResponse(200, text="<p>密码错误</p>")))
    client = ManjaroClient(settings, session=session)
    client.fetch_login_page()
    client.fetch_challenge()
    client.verify_challenge("abcd")

    with pytest.raises(AuthenticationFailed) as exc:
        client.login("seller", "wrong", "abcd")

    assert exc.value.body == "<p>密码错误</p>"
    assert client.state is AuthState.UNAUTHENTICATED
    assert client.tokens is None
    assert (settings.diagnostics_dir / "manjaro_login_response.html").read_text(encoding="utf-8") == "<p>密码错误</p>"
    assert not settings.cookie_file.exists()


def test_login_page_without_tokens_is_protocol_error(settings):
    client = ManjaroClient(settings, session=FakeSession([FakeResponse(text="<html>maintenance</html>")]))
    with pytest.raises(ProtocolError):
        client.fetch_login_page()
    assert client.state is AuthState.UNAUTHENTICATED


def test_restore_from_snapshot(settings):
    client = ManjaroClient(settings, session=FakeSession())
    assert client.restore_from_snapshot() is False

    settings.cookie_file.write_text('{"PHPSESSID": "saved"}', encoding="utf-8")
    assert client.restore_from_snapshot() is True
    assert client.state is AuthState.LOGGED_IN
    assert client.store.get("PHPSESSID") == "saved"


def test_check_login_valid_treats_transport_error_as_invalid(settings):
    session = FakeSession([requests.errors.RequestsError("connection reset")])
    assert ManjaroClient(settings, session=session).check_login_valid() is False


def test_blocking_login_check_returns_on_first_success(settings):
    session = FakeSession([FakeResponse(text="<html>seller center</html>")])
    client = ManjaroClient(settings, session=session)
    assert client.check_login_valid_blocking() is True
    assert len(session.calls) == 1


def test_blocking_login_check_retries_through_bounces(settings):
    session = FakeSession([
        FakeResponse(text='<a href="act=seller_login">login</a>'),
        FakeResponse(text='<a href="act=seller_login">login</a>'),
        FakeResponse(text="<html>seller center</html>"),
    ])
    client = ManjaroClient(settings, session=session)
    assert client.check_login_valid_blocking() is True
    assert len(session.calls) == 3


def test_blocking_login_check_is_cancellable(settings):
    token = CancelToken()
    token.cancel()
    session = FakeSession()
    with pytest.raises(PollCancelled):
        ManjaroClient(settings, session=session).check_login_valid_blocking(token)
    assert session.calls == []


# ─── Resilient reads ─────────────────────────────────────────────────────────


def test_category_specs_retries_truncated_pages(settings):
    truncated = FakeResponse(text=spec_page()[:5000])
    session = FakeSession([truncated, truncated, truncated, FakeResponse(text=spec_page())])
    specs = ManjaroClient(settings, session=session).get_category_specs("3871")
    assert len(session.calls) == 4
    assert [s.attribute_id for s in specs] == ["1", "2"]


def test_transport_list_retries_truncated_pages(settings):
    truncated = FakeResponse(text="<html>short</html>")
    session = FakeSession([truncated, truncated, truncated, FakeResponse(text=transport_page())])
    templates = ManjaroClient(settings, session=session).get_transport_list()
    assert len(session.calls) == 4
    assert templates[0].id == "7"


def test_transport_list_retries_transport_errors(settings):
    session = FakeSession([
        requests.errors.RequestsError("timeout"),
        FakeResponse(text=transport_page()),
    ])
    templates = ManjaroClient(settings, session=session).get_transport_list()
    assert len(session.calls) == 2
    assert len(templates) == 2


def test_retry_cap_raises_transient_error(settings):
    capped = dataclasses.replace(settings, max_poll_attempts=3)
    session = FakeSession(handler=lambda *_: FakeResponse(text="short"))
    with pytest.raises(TransientBackendError):
        ManjaroClient(capped, session=session).get_category_specs("3871")
    assert len(session.calls) == 3


def test_category_specs_url_and_parse(settings):
    session = FakeSession([FakeResponse(text=spec_page())])
    specs = ManjaroClient(settings, session=session).get_category_specs("3871")
    url = session.calls[0][1]
    assert "op=add_step_two" in url and "class_id=3871" in url and "t_id=" in url
    assert [s.attribute_name for s in specs] == ["Color", "Size"]


def test_get_all_categories(settings):
    session = FakeSession([FakeResponse(text="<html>no data</html>"), FakeResponse(text=category_page())])
    categories = ManjaroClient(settings, session=session).get_all_categories()
    assert len(session.calls) == 2
    assert len(categories) == 4


# ─── Writes ──────────────────────────────────────────────────────────────────


def test_add_spec_value(settings):
    session = FakeSession([FakeResponse(text='{"value_id": "350"}')])
    value_id = ManjaroClient(settings, session=session).add_spec_value("3871", "1", "Green")
    assert value_id == "350"
    url = session.calls[0][1]
    assert "op=ajax_add_spec" in url and "gc_id=3871" in url and "sp_id=1" in url and "name=Green" in url


def test_upload_image_returns_stored_name(settings):
    session = FakeSession([FakeResponse(text='{"name": "223_0001.jpg"}')])
    name = ManjaroClient(settings, session=session).upload_image(b"\xff\xd8jpeg", "image_1.jpg")
    assert name == "223_0001.jpg"
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert "op=image_upload" in url and "upload_type=uploadedfile" in url
    assert "multipart" in kwargs


def test_upload_image_rejected(settings):
    session = FakeSession([FakeResponse(text='{"error": "type not allowed"}')])
    assert ManjaroClient(settings, session=session).upload_image(b"data") is None


def test_download_image_failure_returns_none(settings):
    session = FakeSession([FakeResponse(404, content=b"")])
    assert ManjaroClient(settings, session=session).download_image("https://img.example/a.jpg") is None


def test_post_goods_form_does_not_follow_redirects(settings):
    session = FakeSession([FakeResponse(302, headers={"Location": "index.php?commonid=1"})])
    ManjaroClient(settings, session=session).post_goods_form(b"--b--\r\n", "b")
    _, url, kwargs = session.calls[0]
    assert url.endswith("op=save_goods")
    assert kwargs["allow_redirects"] is False
    assert kwargs["headers"]["Content-Type"] == "multipart/form-data; boundary=b"
    assert kwargs["data"] == b"--b--\r\n"
