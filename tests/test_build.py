import logging
import os
import time
from pathlib import Path

import pytest

from plinth.actions import Remove, Rename
from plinth.build import Builder, FileStatus, build_site
from plinth.compilers import create_default_compilers
from plinth.config import BuildConfig
from plinth.errors import BuildError, CompileError, ConfigError, TemplateNotFoundError
from plinth.plugins import FunctionPlugin
from plinth.protocols import CompileResult
from plinth.utils import content_hash

TEMPLATE = (
    "<html><head><title><!-- build:title -->Site<!-- /build:title --></title>"
    '<link href="style.scss"></head>'
    "<body><!-- build:content --></body></html>"
)


class FakeSass:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    def compile(self, source, options):
        self.calls += 1
        if self.fail:
            raise CompileError("Sass compilation failed: unexpected end")
        return CompileResult(output="/* compiled */\n" + source.replace("$c", "red"))


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


def age(root: Path, seconds: int = 100) -> None:
    """Move every file under ``root`` into the past."""
    stamp = time.time() - seconds
    for path in root.rglob("*"):
        if path.is_file():
            os.utime(path, (stamp, stamp))


def touch(path: Path) -> None:
    stamp = time.time() + 100
    os.utime(path, (stamp, stamp))


def make_builder(tmp_path: Path, files: dict[str, str], sass=None, extra_plugins=(), **config):
    build_config = BuildConfig.from_dict(tmp_path, config)
    build_config.input.mkdir(parents=True, exist_ok=True)
    write_files(build_config.input, files)
    age(build_config.input)
    compilers = create_default_compilers(build_config.input, tmp_path)
    compilers.register("sass", sass or FakeSass())
    return Builder(build_config, compilers=compilers, extra_plugins=extra_plugins)


def output_mtimes(output: Path) -> dict[str, int]:
    return {
        path.relative_to(output).as_posix(): path.stat().st_mtime_ns
        for path in output.rglob("*")
        if path.is_file()
    }


def basic_site() -> dict[str, str]:
    return {
        "template.html": TEMPLATE,
        "style.scss": "body { color: $c; }",
        "index.html": "<!-- build:content -->Hello<!-- /build:content -->",
        "about.html": (
            "<!-- build:title -->About<!-- /build:title -->"
            "<!-- build:content --><p>About us</p><!-- /build:content -->"
        ),
    }


def test_compiles_style_and_busts_template_link(tmp_path):
    builder = make_builder(tmp_path, basic_site())
    result = builder.run(full=True)
    output = builder.config.output

    css = "/* compiled */\nbody { color: red; }"
    token = content_hash(css.encode("utf-8"))
    assert (output / "style.css").read_text(encoding="utf-8") == css
    assert not (output / "style.scss").exists()
    assert (output / "index.html").read_text(encoding="utf-8") == (
        "<html><head><title><!-- build:title -->Site<!-- /build:title --></title>"
        f'<link href="style.css?{token}"></head>'
        "<body>Hello</body></html>"
    )
    assert "<title>About</title>" in (output / "about.html").read_text(encoding="utf-8")
    assert f"style.css?{token}" in (output / "template.html").read_text(encoding="utf-8")

    assert result.statuses["index.html"] is FileStatus.WRITTEN
    assert result.statuses["style.scss"] is FileStatus.WRITTEN
    assert result.outputs["style.scss"] == "style.css"
    assert result.templates == {"template.html": True}
    assert result.template_changed


def test_second_run_is_a_no_op(tmp_path):
    builder = make_builder(tmp_path, basic_site())
    builder.run(full=True)
    before = output_mtimes(builder.config.output)

    result = builder.run(full=False)

    assert output_mtimes(builder.config.output) == before
    assert result.written == []
    assert result.copied == []
    assert result.skipped == ["about.html", "index.html", "style.scss"]
    assert not result.template_changed


def test_touching_one_page_rewrites_only_that_page(tmp_path):
    builder = make_builder(tmp_path, basic_site())
    builder.run(full=True)
    before = output_mtimes(builder.config.output)

    touch(builder.config.input / "about.html")
    result = builder.run(full=False)

    after = output_mtimes(builder.config.output)
    assert result.written == ["about.html"]
    assert after["about.html"] != before["about.html"]
    assert {k: v for k, v in after.items() if k != "about.html"} == {
        k: v for k, v in before.items() if k != "about.html"
    }


def test_template_change_rewrites_every_page(tmp_path):
    builder = make_builder(tmp_path, basic_site())
    builder.run(full=True)

    template = builder.config.input / "template.html"
    template.write_text(TEMPLATE.replace("<body>", "<body class='v2'>"), encoding="utf-8")
    touch(template)
    result = builder.run(full=False)

    assert result.template_changed
    assert "index.html" in result.written
    assert "about.html" in result.written
    page = (builder.config.output / "index.html").read_text(encoding="utf-8")
    assert "<body class='v2'>Hello</body>" in page


def test_changed_stylesheet_changes_token(tmp_path):
    builder = make_builder(tmp_path, basic_site())
    builder.run(full=True)
    first = (builder.config.output / "index.html").read_text(encoding="utf-8")

    style = builder.config.input / "style.scss"
    style.write_text("body { color: blue; }", encoding="utf-8")
    touch(style)
    result = builder.run(full=False)

    css = "/* compiled */\nbody { color: blue; }"
    page = (builder.config.output / "index.html").read_text(encoding="utf-8")
    assert page != first
    assert f"style.css?{content_hash(css)}" in page
    assert (builder.config.output / "style.css").read_text(encoding="utf-8") == css
    assert result.template_changed


def test_changed_script_changes_token_in_page(tmp_path):
    files = basic_site()
    files["app.js"] = "one()"
    files["index.html"] = (
        '<!-- build:content --><script src="app.js"></script><!-- /build:content -->'
    )
    builder = make_builder(tmp_path, files)
    builder.run(full=True)
    page = builder.config.output / "index.html"
    assert f'src="app.js?{content_hash(b"one()")}"' in page.read_text(encoding="utf-8")

    script = builder.config.input / "app.js"
    script.write_text("two()", encoding="utf-8")
    touch(script)
    result = builder.run(full=False)

    assert f'src="app.js?{content_hash(b"two()")}"' in page.read_text(encoding="utf-8")
    assert result.written == ["index.html"]
    assert result.copied == ["app.js"]
    assert result.statuses["about.html"] is FileStatus.SKIPPED


def test_compiled_stylesheet_token_does_not_depend_on_file_order(tmp_path, caplog):
    files = basic_site()
    files["css/site.scss"] = "a { color: $c; }"
    link = '<!-- build:content --><link rel="stylesheet" href="/css/site.css"><!-- /build:content -->'
    files["a/index.html"] = link
    files["z/index.html"] = link
    builder = make_builder(tmp_path, files)

    with caplog.at_level(logging.WARNING, logger="plinth"):
        builder.run(full=True)

    token = content_hash("/* compiled */\na { color: red; }")
    output = builder.config.output
    for page in ("a/index.html", "z/index.html"):
        assert f'href="/css/site.css?{token}"' in (output / page).read_text(encoding="utf-8")
    assert "not found" not in caplog.text

    style = builder.config.input / "css" / "site.scss"
    style.write_text("a { color: blue; }", encoding="utf-8")
    touch(style)
    result = builder.run(full=False)

    token = content_hash("/* compiled */\na { color: blue; }")
    for page in ("a/index.html", "z/index.html"):
        assert f'href="/css/site.css?{token}"' in (output / page).read_text(encoding="utf-8")
    assert sorted(result.written) == ["a/index.html", "css/site.scss", "z/index.html"]


def test_changed_jinja_partial_rebuilds_pages(tmp_path):
    files = basic_site()
    files["_base.jinja"] = "<body>{% block body %}{% endblock %}</body>"
    files["page.html.jinja"] = "{% extends '_base.jinja' %}{% block body %}Hi{% endblock %}"
    builder = make_builder(tmp_path, files)
    builder.run(full=True)
    page = builder.config.output / "page.html"
    assert page.read_text(encoding="utf-8") == "<body>Hi</body>"

    assert builder.run(full=False).statuses["page.html.jinja"] is FileStatus.SKIPPED

    base = builder.config.input / "_base.jinja"
    base.write_text("<main>{% block body %}{% endblock %}</main>", encoding="utf-8")
    touch(base)
    result = builder.run(full=False)

    assert result.statuses["page.html.jinja"] is FileStatus.WRITTEN
    assert result.statuses["_base.jinja"] is FileStatus.REMOVED
    assert page.read_text(encoding="utf-8") == "<main>Hi</main>"
    assert not (builder.config.output / "_base.jinja").exists()


def test_files_vanishing_during_a_run_are_skipped(tmp_path, monkeypatch, caplog):
    files = basic_site()
    files["robots.txt"] = "x"
    builder = make_builder(tmp_path, files)
    discovered = builder.discover()
    monkeypatch.setattr(
        builder, "discover", lambda: sorted(discovered + ["gone.html", "gone.txt"])
    )

    with caplog.at_level(logging.DEBUG, logger="plinth"):
        result = builder.run(full=True)

    assert result.statuses["gone.html"] is FileStatus.SKIPPED
    assert result.statuses["gone.txt"] is FileStatus.SKIPPED
    assert result.statuses["robots.txt"] is FileStatus.COPIED
    assert "Vanished gone.html" in caplog.text
    assert "Vanished gone.txt" in caplog.text


def test_rename_outside_output_is_rejected(tmp_path):
    escape = FunctionPlugin([".txt"], lambda c, p, s: Rename("../escape.html", s), name="escape")
    builder = make_builder(
        tmp_path, {"template.html": "<!-- build:content -->", "a.txt": "x"}, extra_plugins=[escape]
    )

    with pytest.raises(BuildError, match="outside the output directory") as excinfo:
        builder.run(full=True)

    assert excinfo.value.source_path == builder.config.input / "a.txt"
    assert not (tmp_path / "escape.html").exists()


def test_full_builds_are_byte_identical(tmp_path):
    files = basic_site()
    files.update(
        {
            "app.js": "run()",
            "post.md": "---\ndescription: First\n---\n# Post\n\n<img src='logo.png'>",
            "logo.png": "png",
            "_base.jinja": "<body>{% block body %}{% endblock %}</body>",
            "page.html.jinja": "{% extends '_base.jinja' %}{% block body %}Hi{% endblock %}",
        }
    )
    builder = make_builder(tmp_path, files)
    output = builder.config.output

    def snapshot():
        return {
            path.relative_to(output).as_posix(): path.read_bytes()
            for path in output.rglob("*")
            if path.is_file()
        }

    builder.run(full=True)
    first = snapshot()
    builder.run(full=True)

    assert snapshot() == first
    assert set(first) == {
        "about.html",
        "app.js",
        "index.html",
        "logo.png",
        "page.html",
        "post.html",
        "style.css",
        "template.html",
    }


def test_nested_template_governs_subdirectory(tmp_path):
    files = basic_site()
    files["docs/template.html"] = "<article><!-- build:content --></article>"
    files["docs/guide/page.html"] = "<!-- build:content -->Guide<!-- /build:content -->"
    builder = make_builder(tmp_path, files)
    builder.run(full=True)

    page = builder.config.output / "docs" / "guide" / "page.html"
    assert page.read_text(encoding="utf-8") == "<article>Guide</article>"
    assert (builder.config.output / "docs" / "template.html").exists()


def test_missing_template_for_file_is_fatal(tmp_path):
    builder = make_builder(
        tmp_path,
        {
            "docs/template.html": "<!-- build:content -->",
            "index.html": "<!-- build:content -->x<!-- /build:content -->",
        },
    )
    with pytest.raises(TemplateNotFoundError) as excinfo:
        builder.run(full=True)
    assert excinfo.value.path == "index.html"
    assert excinfo.value.expected == "template.html"


def test_no_template_at_all_is_fatal(tmp_path):
    builder = make_builder(tmp_path, {"index.html": "x"})
    with pytest.raises(ConfigError, match="Template file template.html not found"):
        builder.run(full=True)


def test_missing_input_directory(tmp_path):
    config = BuildConfig.from_dict(tmp_path, {})
    with pytest.raises(ConfigError, match="Expected input directory"):
        Builder(config).run(full=True)


def test_markdown_page_is_renamed_and_templated(tmp_path):
    files = basic_site()
    files["posts/hello.md"] = "# Hello World\n\nSome *text*."
    builder = make_builder(tmp_path, files)
    result = builder.run(full=True)

    output = builder.config.output
    html = (output / "posts" / "hello.html").read_text(encoding="utf-8")
    assert "<title>Hello World</title>" in html
    assert '<h1 id="hello-world">Hello World</h1>' in html
    assert "<em>text</em>" in html
    assert not (output / "posts" / "hello.md").exists()
    assert result.outputs["posts/hello.md"] == "posts/hello.html"

    again = builder.run(full=False)
    assert again.statuses["posts/hello.md"] is FileStatus.SKIPPED


def test_rename_onto_existing_source_is_an_error(tmp_path):
    files = basic_site()
    files["index.md"] = "# Clash"
    builder = make_builder(tmp_path, files)
    with pytest.raises(BuildError, match="would overwrite another source file"):
        builder.run(full=True)


def test_partials_and_ignored_sources_are_not_written(tmp_path):
    files = basic_site()
    files["_vars.scss"] = "$c: red;"
    files["legacy.less"] = "@c: red;"
    files["logo.svg"] = "<svg/>"
    builder = make_builder(tmp_path, files)
    result = builder.run(full=True)

    output = builder.config.output
    assert result.statuses["_vars.scss"] is FileStatus.REMOVED
    assert result.statuses["legacy.less"] is FileStatus.SKIPPED
    assert result.statuses["logo.svg"] is FileStatus.COPIED
    assert not (output / "_vars.scss").exists()
    assert not (output / "_vars.css").exists()
    assert not (output / "legacy.less").exists()
    assert (output / "logo.svg").read_text(encoding="utf-8") == "<svg/>"


def test_pass_through_files_are_copied_untouched(tmp_path):
    files = basic_site()
    raw = "<!-- build:content -->raw<!-- /build:content --><script src='x.js'></script>"
    files["vendor/widget.html"] = raw
    files["vendor/theme.scss"] = "$c: 1;"
    builder = make_builder(tmp_path, files, pass_through=["vendor/*"])
    result = builder.run(full=True)

    output = builder.config.output
    assert (output / "vendor" / "widget.html").read_text(encoding="utf-8") == raw
    assert (output / "vendor" / "theme.scss").exists()
    assert result.statuses["vendor/widget.html"] is FileStatus.COPIED

    again = builder.run(full=False)
    assert again.statuses["vendor/widget.html"] is FileStatus.SKIPPED


def test_copied_files_keep_source_mtime(tmp_path):
    files = basic_site()
    files["img/logo.png"] = "png"
    builder = make_builder(tmp_path, files)
    builder.run(full=True)

    source = builder.config.input / "img" / "logo.png"
    copied = builder.config.output / "img" / "logo.png"
    assert copied.stat().st_mtime_ns == source.stat().st_mtime_ns


def test_plugin_can_remove_another_file(tmp_path):
    def drop_b(context, path, content):
        if path == "a.txt":
            return [content.upper(), Remove("b.txt")]
        return content

    plugin = FunctionPlugin([".txt"], drop_b, name="dropper")
    files = basic_site()
    files.update({"a.txt": "a", "b.txt": "b"})
    builder = make_builder(tmp_path, files, extra_plugins=[plugin])
    result = builder.run(full=True)

    output = builder.config.output
    assert (output / "a.txt").read_text(encoding="utf-8") == "A"
    assert not (output / "b.txt").exists()
    assert result.statuses["b.txt"] is FileStatus.REMOVED


def test_removing_a_finished_file_is_ignored(tmp_path):
    def drop_a(context, path, content):
        if path == "b.txt":
            return [content, Remove("a.txt")]
        return content

    plugin = FunctionPlugin([".txt"], drop_a)
    files = basic_site()
    files.update({"a.txt": "a", "b.txt": "b"})
    builder = make_builder(tmp_path, files, extra_plugins=[plugin])
    result = builder.run(full=True)

    assert result.statuses["a.txt"] is FileStatus.WRITTEN
    assert (builder.config.output / "a.txt").exists()


def test_later_plugins_see_renamed_identity(tmp_path):
    seen = []

    def to_html(context, path, content):
        body = f"<!-- build:content -->{content}<!-- /build:content -->"
        return Rename(path[: -len(".txt")] + ".html", body)

    def spy(context, path, content):
        seen.append(path)
        return content

    plugins = [
        FunctionPlugin([".txt"], to_html, target=lambda p: p[: -len(".txt")] + ".html"),
        FunctionPlugin([".txt"], spy, name="txt-spy"),
        FunctionPlugin([".html"], spy, name="html-spy"),
    ]
    builder = make_builder(tmp_path, {**basic_site(), "note.txt": "hi"}, extra_plugins=plugins)
    result = builder.run(full=True)

    assert "note.txt" not in seen
    assert "note.html" in seen
    assert result.outputs["note.txt"] == "note.html"
    assert builder.predict_output("note.txt") == "note.html"
    assert "<body>hi</body>" in (builder.config.output / "note.html").read_text(encoding="utf-8")


def test_compiler_failure_names_the_file(tmp_path):
    files = basic_site()
    files["template.html"] = "<!-- build:content -->"
    builder = make_builder(tmp_path, files, sass=FakeSass(fail=True))
    with pytest.raises(BuildError) as excinfo:
        builder.run(full=True)

    err = excinfo.value
    assert err.source_path == builder.config.input / "style.scss"
    assert "[style]" in err.message
    assert "unexpected end" in err.message
    # Files processed before the failure stay on disk.
    assert (builder.config.output / "index.html").exists()


def test_full_build_removes_stale_output(tmp_path):
    builder = make_builder(tmp_path, basic_site())
    stale = builder.config.output / "old.html"
    stale.parent.mkdir(parents=True)
    stale.write_text("old", encoding="utf-8")

    builder.run(full=False)
    assert stale.exists()
    builder.run(full=True)
    assert not stale.exists()


def test_output_inside_input_is_not_rebuilt(tmp_path):
    builder = make_builder(tmp_path, basic_site(), output="src/_site")
    builder.run(full=True)
    result = builder.run(full=False)

    assert not any(path.startswith("_site") for path in result.statuses)
    assert not (builder.config.output / "_site").exists()


def test_missing_asset_warns_and_leaves_reference(tmp_path, caplog):
    files = basic_site()
    files["index.html"] = (
        "<!-- build:content --><script src='missing.js'></script><!-- /build:content -->"
    )
    builder = make_builder(tmp_path, files)
    with caplog.at_level(logging.WARNING, logger="plinth"):
        builder.run(full=True)

    assert "index.html: referenced asset missing.js not found" in caplog.text
    page = (builder.config.output / "index.html").read_text(encoding="utf-8")
    assert "<script src='missing.js'></script>" in page


def test_root_relative_reference_from_subdirectory(tmp_path):
    files = basic_site()
    files["img/logo.png"] = "png-bytes"
    files["docs/index.html"] = (
        '<!-- build:content --><img src="/img/logo.png"><!-- /build:content -->'
    )
    builder = make_builder(tmp_path, files)
    builder.run(full=True)

    page = (builder.config.output / "docs" / "index.html").read_text(encoding="utf-8")
    assert f'<img src="/img/logo.png?{content_hash(b"png-bytes")}">' in page


def test_verbose_logging_lists_actions(tmp_path, caplog):
    files = basic_site()
    files["robots.txt"] = "User-agent: *"
    builder = make_builder(tmp_path, files)
    with caplog.at_level(logging.DEBUG, logger="plinth"):
        builder.run(full=True)

    assert "Wrote index.html" in caplog.text
    assert "Wrote style.scss -> style.css" in caplog.text
    assert "Copied robots.txt" in caplog.text


def test_predict_output(tmp_path):
    builder = make_builder(tmp_path, {})
    assert builder.predict_output("docs/a.md") == "docs/a.html"
    assert builder.predict_output("page.html.jinja") == "page.html"
    assert builder.predict_output("css/site.scss") == "css/site.css"
    assert builder.predict_output("css/_vars.scss") is None
    assert builder.predict_output("index.html") == "index.html"


def test_remove_output(tmp_path):
    files = basic_site()
    files["post.md"] = "# Post"
    builder = make_builder(tmp_path, files)
    builder.run(full=True)
    output = builder.config.output

    removed = builder.remove_output("post.md")
    assert removed == [output / "post.html"]
    assert not (output / "post.html").exists()

    assert builder.remove_output("style.scss") == [output / "style.css"]
    assert builder.remove_output("nothing.html") == []


def test_build_site_helper(tmp_path):
    config = BuildConfig.from_dict(tmp_path, {})
    write_files(config.input, {"template.html": "<!-- build:content -->", "robots.txt": "x"})
    result = build_site(config)
    assert result.full
    assert result.copied == ["robots.txt"]
    assert result.output_dir == config.output
