"""Tests for requirement parsing, matching and requirements files."""
import pytest

from depforge.errors import ParseError
from depforge.versioning import parse, parse_requirements_file, parse_specifier
from depforge.versioning.models import DirectUrlSource, PathSource, VcsSource

from conftest import make_environment


class TestParse:
    """Single requirement strings."""

    def test_name_is_normalized(self):
        req = parse("Foo_Bar.Baz>=1.0")
        assert req.name == "foo-bar-baz"
        assert str(req.specifier) == ">=1.0"

    def test_extras_and_marker(self):
        req = parse('requests[Security,socks]>=2.0; python_version >= "3.8"')
        assert req.extras == frozenset({"security", "socks"})
        assert req.marker is not None

    def test_direct_url_with_hash(self):
        req = parse("pkg @ https://example.com/pkg-1.0.tar.gz#sha256=abc123")
        assert isinstance(req.source, DirectUrlSource)
        assert req.source.url == "https://example.com/pkg-1.0.tar.gz"
        assert req.source.hashes == (("sha256", "abc123"),)

    def test_vcs_url_with_revision_and_egg(self):
        req = parse("git+https://github.com/org/tool.git@v1.2#egg=tool")
        assert req.name == "tool"
        assert isinstance(req.source, VcsSource)
        assert req.source.vcs == "git"
        assert req.source.rev == "v1.2"
        assert req.source.url == "https://github.com/org/tool.git"

    def test_unnamed_local_path(self, tmp_path):
        req = parse("./project", base_dir=str(tmp_path))
        assert req.name == ""
        assert isinstance(req.source, PathSource)
        assert req.source.path == str(tmp_path / "project")

    @pytest.mark.parametrize("text", ["", "   ", "pkg>=>1", "pkg[extra", "pkg; python_version >>> '3'", "ftp://x/y"])
    def test_malformed_input_raises(self, text):
        with pytest.raises(ParseError):
            parse(text)

    def test_bad_specifier_raises(self):
        with pytest.raises(ParseError):
            parse_specifier(">>1")


class TestRoundTrip:
    """Formatting a requirement and parsing it again gives an equal requirement."""

    @pytest.mark.parametrize(
        "text",
        [
            "pkg",
            "pkg>=1.0,<2.0",
            "pkg[a,b]==1.5",
            'pkg>1; sys_platform == "linux"',
            "pkg @ https://example.com/pkg-1.0-py3-none-any.whl",
            "tool @ git+https://github.com/org/tool.git@main",
        ],
    )
    def test_format_then_parse(self, text):
        req = parse(text)
        again = parse(str(req))
        assert again == req
        assert str(again) == str(req)


class TestMatches:
    """Requirement.matches against versions, extras and environments."""

    def test_specifier_bounds(self):
        req = parse("pkg>=1.0,<2.0")
        assert req.matches("1.0")
        assert req.matches("1.9")
        assert not req.matches("2.0")
        assert not req.matches("0.9")

    def test_invalid_version_never_matches(self):
        assert not parse("pkg").matches("not-a-version")

    def test_marker_excludes_environment(self):
        req = parse('pkg; sys_platform == "win32"')
        assert not req.matches("1.0", environment=make_environment())
        assert req.matches("1.0", environment=make_environment(sys_platform="win32"))

    def test_extra_marker_needs_active_extra(self):
        req = parse('pkg; extra == "test"')
        env = make_environment()
        assert not req.matches("1.0", environment=env)
        assert req.matches("1.0", extras=["test"], environment=env)


class TestRequirementsFile:
    """Requirements files with includes, constraints and index options."""

    def test_includes_constraints_and_options(self, tmp_path):
        (tmp_path / "base.txt").write_text("six==1.16.0\n", encoding="utf-8")
        (tmp_path / "constraints.txt").write_text("idna<4\n", encoding="utf-8")
        (tmp_path / "requirements.txt").write_text(
            "--index-url https://mirror.example/simple\n"
            "--extra-index-url https://extra.example/simple\n"
            "-r base.txt\n"
            "-c constraints.txt\n"
            "# a comment\n"
            "requests>=2 \\\n"
            "    ; python_version >= '3.8'  # trailing comment\n"
            "./local-project\n",
            encoding="utf-8",
        )

        result = parse_requirements_file(str(tmp_path / "requirements.txt"))

        names = [r.name for r in result.requirements]
        assert names == ["six", "requests", ""]
        assert [r.name for r in result.constraints] == ["idna"]
        assert result.index_url == "https://mirror.example/simple"
        assert result.extra_index_urls == ["https://extra.example/simple"]
        assert isinstance(result.requirements[2].source, PathSource)

    def test_hash_options_are_dropped(self, tmp_path):
        path = tmp_path / "req.txt"
        path.write_text("pkg==1.0 --hash=sha256:abcdef\n", encoding="utf-8")
        result = parse_requirements_file(str(path))
        assert str(result.requirements[0]) == "pkg==1.0"

    def test_include_cycle_raises(self, tmp_path):
        (tmp_path / "a.txt").write_text("-r b.txt\n", encoding="utf-8")
        (tmp_path / "b.txt").write_text("-r a.txt\n", encoding="utf-8")
        with pytest.raises(ParseError):
            parse_requirements_file(str(tmp_path / "a.txt"))

    def test_malformed_line_names_location(self, tmp_path):
        path = tmp_path / "req.txt"
        path.write_text("ok==1\nbad>=>1\n", encoding="utf-8")
        with pytest.raises(ParseError) as excinfo:
            parse_requirements_file(str(path))
        assert "req.txt:2" in str(excinfo.value)

    def test_constraint_flag_routes_everything_to_constraints(self, tmp_path):
        path = tmp_path / "c.txt"
        path.write_text("idna<4\nurllib3<2\n", encoding="utf-8")
        result = parse_requirements_file(str(path), constraint=True)
        assert result.requirements == []
        assert [r.name for r in result.constraints] == ["idna", "urllib3"]
