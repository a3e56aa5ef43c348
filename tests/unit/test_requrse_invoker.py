from requrse_invoker import main, make_output_sink, parse_args


def test_parse_args_defaults_and_repeatable_extra():
    args = parse_args(["req.yaml", "-e", "a=1", "--extra", "b=two", "--proxy", "http://127.0.0.1:8080", "-k"])
    assert args.definition_file == "req.yaml"
    assert args.extra == ["a=1", "b=two"]
    assert args.proxy == "http://127.0.0.1:8080"
    assert args.insecure is True
    assert args.max_iterations is None
    assert args.output_dir is None
    assert args.page_size == 10


def test_stdout_sink(capsys):
    sink = make_output_sink(None, "ignored")
    sink(b'{"a": 1}')
    assert capsys.readouterr().out == '{"a": 1}\n'


def test_file_sink_numbers_responses(tmp_path):
    sink = make_output_sink(str(tmp_path / "out"), "My Request!")
    sink(b"first")
    sink(b"second")
    assert (tmp_path / "out" / "myrequest-0.out").read_bytes() == b"first"
    assert (tmp_path / "out" / "myrequest-1.out").read_bytes() == b"second"


def test_main_returns_1_on_bad_definition(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("url: [unclosed")
    assert main([str(bad)]) == 1
