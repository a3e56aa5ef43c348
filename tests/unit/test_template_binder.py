import pytest

from request_definition import RequestContext, RequestDefinition
from requrse_errors import TemplateRenderError, TemplateSyntaxError
from response_normalizer import normalize_http
from template_binder import (
    TemplateBinder,
    TemplateCache,
    compile_template,
    sanitize_key,
    template_key,
)


@pytest.fixture
def context() -> RequestContext:
    ctx = RequestContext(
        host="api.example.com",
        page_size=25,
        auth_token="pizza",
        extra={"user": "alice", "q": "a b&c", "nested": {"id": 7}},
    )
    ctx.advance(2, ["first", "second"])
    return ctx


def render(source: str, ctx: RequestContext) -> str:
    return compile_template("test", source).render(ctx.template_view())


@pytest.mark.parametrize("source", ["", "plain text", "no actions here }} at all", '{"a": [1, 2]}'])
def test_literal_template_is_returned_unchanged(source, context):
    assert render(source, context) == source
    assert render(source, RequestContext()) == source


def test_context_fields(context):
    assert render("{{.Host}}/{{.Page}}/{{.PageSize}}/{{.ResultOffset}}/{{.Iteration}}", context) == "api.example.com/3/25/50/2"
    assert render("Bearer {{ .AuthToken }}", context) == "Bearer pizza"
    assert render("{{.Extra.user}}-{{.Extra.nested.id}}", context) == "alice-7"
    assert render("{{.page}}:{{.result_offset}}", context) == "3:50"


def test_list_params_by_bracket_and_index(context):
    assert render("{{.ListParams[0]}},{{index .ListParams 1}}", context) == "first,second"
    assert render('{{index .Extra "user"}}', context) == "alice"


def test_filters(context):
    assert render("q={{ .Extra.q | urlquery }}", context) == "q=a+b%26c"
    assert render("{{ .Extra.user | upper }}", context) == "ALICE"
    assert render("{{ .Extra.nested | json }}", context) == '{"id":7}'
    assert render("{{ .Extra.user | base64 }}", context) == "YWxpY2U="


def test_trim_markers_and_comments(context):
    assert render("a  {{- .Page -}}  b", context) == "a3b"
    assert render("x{{/* ignored */}}y", context) == "xy"


def test_last_response_absent_renders_empty(context):
    assert context.last_response is None
    assert render("cursor={{.LastResponse.body_object.next}}", context) == "cursor="


def test_last_response_fields(context):
    context.advance(3, last_response=normalize_http("http://x/items?page=3", 200, {}, b'{"next": "abc", "done": false}'))
    assert render("{{.LastResponse.body_object.next}}|{{.LastResponse.status}}|{{.LastResponse.body_object.done}}", context) == "abc|200|false"
    assert render("{{.LastResponse.request.path}}", context) == "/items"


def test_last_response_capitalised_fields(context):
    definition = RequestDefinition(url="http://x/?cursor={{.LastResponse.BodyObject.next}}")
    binder = TemplateBinder(definition)
    assert binder.bind(context).url == "http://x/?cursor="

    context.advance(3, last_response=normalize_http("http://x/items?page=3", 200, {"Content-Type": "application/json"}, b'{"next": "abc"}'))
    assert binder.bind(context).url == "http://x/?cursor=abc"
    assert render("{{.LastResponse.Status}} {{.LastResponse.RawBody}}", context) == '200 {"next": "abc"}'
    assert render("{{.LastResponse.Request.Path}}?{{index .LastResponse.Request.Query.page 0}}", context) == "/items?3"
    assert render("{{.LastResponse.ContentType}}|{{.LastResponse.BodyArray}}", context) == "application/json|"


@pytest.mark.parametrize(
    "source",
    [
        "{{.Page",
        "{{}}",
        "{{ nope }}",
        "{{ .Page | shout }}",
        "{{ .Extra..user }}",
        "{{ index .ListParams }}",
        "{{ .Page .Host }}",
    ],
)
def test_compile_errors(source):
    with pytest.raises(TemplateSyntaxError):
        compile_template("bad", source)


@pytest.mark.parametrize(
    "source",
    [
        "{{.Missing}}",
        "{{.Extra.unknown}}",
        "{{.ListParams[5]}}",
        "{{index .ListParams 9}}",
        "{{.Host.name}}",
    ],
)
def test_render_errors(source, context):
    with pytest.raises(TemplateRenderError):
        render(source, context)


def test_rendering_is_idempotent(context):
    compiled = compile_template("t", "{{.Page}}-{{.Extra.user}}")
    view = context.template_view()
    assert compiled.render(view) == compiled.render(view) == "3-alice"


def test_sanitize_and_template_key():
    assert sanitize_key("GET_http://X/{{.Page}}") == "get_httpxpage"
    assert template_key("GET", "http://x/{{.Page}}", "url") == "get_httpxpage_url"


def test_binder_memoizes_per_field(context):
    definition = RequestDefinition(
        url="http://x/{{.Page}}",
        method="post",
        body='{"offset": {{.ResultOffset}}}',
        headers={"Authorization": "Bearer {{.AuthToken}}", "X-{{.Extra.user}}": "{{.Page}}"},
    )
    cache = TemplateCache()
    binder = TemplateBinder(definition, cache)

    first = binder.bind(context)
    compiled_count = len(cache)
    second = binder.bind(context)

    assert len(cache) == compiled_count == 6  # url, body, two headers x (name, value)
    assert first == second
    assert first.method == "POST"
    assert first.url == "http://x/3"
    assert first.body == '{"offset": 50}'
    assert first.headers["authorization"] == "Bearer pizza"
    assert first.headers["X-alice"] == "3"
    assert any(key.endswith("_header_1_x-extrauser_value") for key in cache.keys())


def test_binder_later_duplicate_header_wins(context):
    definition = RequestDefinition(url="http://x/", headers={"X-Token": "one", "x-token": "two"})
    headers = TemplateBinder(definition).bind(context).headers
    assert headers.getall("X-Token") == ["two"]


def test_binder_empty_header_name_is_an_error(context):
    definition = RequestDefinition(url="http://x/", headers={"{{.LastResponse.status}}": "v"})
    with pytest.raises(TemplateRenderError):
        TemplateBinder(definition).bind(context)


def test_setup_body_bound_only_for_first_websocket_exchange():
    definition = RequestDefinition(url="ws://x/socket", setup_body='{"auth": "{{.AuthToken}}"}', body="{{.Page}}")
    binder = TemplateBinder(definition)
    ctx = RequestContext(auth_token="pizza")

    ctx.advance(0)
    assert binder.bind(ctx).setup_body == '{"auth": "pizza"}'
    ctx.advance(1)
    assert binder.bind(ctx).setup_body == ""


def test_setup_body_ignored_for_http(context):
    definition = RequestDefinition(url="http://x/", setup_body="{{.Extra.not_there}}")
    context.advance(0)
    bound = TemplateBinder(definition).bind(context)
    assert bound.url == "http://x/"
    assert bound.setup_body == ""
