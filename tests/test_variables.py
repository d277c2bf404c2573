"""Tests for the layered variable resolver."""

import asyncio
import tempfile
from pathlib import Path

import pytest
import yaml

from chartifact.errors import (
    CircularVariableReferenceError,
    NestingDepthExceededError,
    UnresolvedVariableError,
)
from chartifact.variables import VariableResolver, VariableSource


def _resolver(process=None, base=None, env=None, extra=None, strict=False):
    resolver = VariableResolver(process_env=process, extra_variables=extra, strict=strict)
    resolver.set_layers(base=base, environment=env)
    return resolver


# --- Priority ---


def test_process_override_wins():
    resolver = _resolver(process={"H": "override"}, base={"H": "base"}, env={"H": "prod"})
    assert resolver.resolve("${H}").resolved == "override"


def test_environment_file_beats_base():
    resolver = _resolver(base={"H": "base"}, env={"H": "prod"})
    assert resolver.resolve("${H}").resolved == "prod"


def test_base_file_used_when_nothing_else():
    resolver = _resolver(base={"H": "base"})
    assert resolver.resolve("${H}").resolved == "base"


def test_inline_default_when_no_file_value():
    resolver = _resolver()
    assert resolver.resolve("${H:fallback}").resolved == "fallback"


def test_inline_default_beats_extra_variables():
    resolver = _resolver(extra={"H": "extra"})
    assert resolver.resolve("${H:inline}").resolved == "inline"
    assert resolver.resolve("${H}").resolved == "extra"


def test_unresolved_kept_verbatim():
    result = _resolver().resolve("host=${H}")
    assert result.resolved == "host=${H}"
    assert result.unresolved_vars == ["H"]


def test_invalid_name_left_alone():
    result = _resolver().resolve("${message.encodedData}")
    assert result.resolved == "${message.encodedData}"
    assert result.unresolved_vars == []


def test_text_without_tokens_untouched():
    result = _resolver().resolve("plain text: {not a token}")
    assert result.resolved == "plain text: {not a token}"


# --- Nesting ---


def test_nested_default_partially_resolved():
    resolver = _resolver(base={"PORT": "5432"})
    result = resolver.resolve("${URL:proto://${HOST}:${PORT}/db}")
    assert result.resolved == "proto://${HOST}:5432/db"
    assert "HOST" in result.unresolved_vars


def test_found_values_are_expanded():
    resolver = _resolver(base={"URL": "http://${HOST}:${PORT:80}"}, env={"HOST": "prod.local"})
    assert resolver.resolve("${URL}/api").resolved == "http://prod.local:80/api"


def test_unterminated_token_kept():
    result = _resolver(base={"A": "x"}).resolve("${A} and ${B")
    assert result.resolved == "x and ${B"


# --- Cycles and depth ---


def test_cycle_reports_full_chain():
    resolver = _resolver(base={"A": "${B}", "B": "${A}"})
    with pytest.raises(CircularVariableReferenceError) as exc:
        resolver.resolve("${A}")
    assert exc.value.chain == ["A", "B", "A"]
    assert "A -> B -> A" in str(exc.value)


def test_self_reference_is_a_cycle():
    resolver = _resolver(env={"A": "x${A}"})
    with pytest.raises(CircularVariableReferenceError):
        resolver.resolve("${A}")


def _chain(length):
    values = {f"V{i}": "${V%d}" % (i + 1) for i in range(1, length)}
    values[f"V{length}"] = "end"
    return values


def test_depth_cap_exceeded():
    resolver = _resolver(base=_chain(11))
    with pytest.raises(NestingDepthExceededError):
        resolver.resolve("${V1}")


def test_depth_within_cap():
    resolver = _resolver(base=_chain(10))
    assert resolver.resolve("${V1}").resolved == "end"


def test_repeated_reference_is_not_a_cycle():
    resolver = _resolver(base={"A": "${B}-${B}", "B": "b"})
    assert resolver.resolve("${A}").resolved == "b-b"


# --- Strict mode ---


def test_strict_raises_with_every_missing_name():
    resolver = _resolver(strict=True)
    with pytest.raises(UnresolvedVariableError) as exc:
        resolver.resolve("${X}/${Y}")
    assert exc.value.names == ["X", "Y"]


def test_strict_passes_when_everything_resolves():
    resolver = _resolver(base={"X": "1"}, strict=True)
    assert resolver.resolve("${X}${Y:2}").resolved == "12"


# --- Objects ---


def test_resolve_object_is_deep_copy():
    original = {"url": "${HOST}", "list": ["${HOST}", {"port": "${PORT:1}"}], "count": 3}
    resolver = _resolver(env={"HOST": "h"})
    result = resolver.resolve_object(original)
    assert result.resolved == {"url": "h", "list": ["h", {"port": "1"}], "count": 3}
    assert original["url"] == "${HOST}"


def test_resolve_object_strict_collects_across_leaves():
    resolver = _resolver(strict=True)
    with pytest.raises(UnresolvedVariableError) as exc:
        resolver.resolve_object({"a": "${ONE}", "b": ["${TWO}"]})
    assert exc.value.names == ["ONE", "TWO"]


# --- Introspection ---


def test_extract_variable_names_includes_nested():
    names = VariableResolver.extract_variable_names("${URL:proto://${HOST}:${PORT}/db} ${USER}")
    assert names == ["URL", "HOST", "PORT", "USER"]


def test_variable_map_reports_winning_source():
    resolver = _resolver(
        process={"H": "proc", "UNRELATED": "x"},
        base={"H": "base", "B": "b"},
        env={"E": "e"},
        extra={"X": "x"},
    )
    var_map = resolver.get_variable_map()
    assert var_map["H"].source is VariableSource.PROCESS
    assert var_map["H"].value == "proc"
    assert var_map["B"].source is VariableSource.BASE
    assert var_map["E"].source is VariableSource.ENVIRONMENT
    assert var_map["X"].source is VariableSource.EXTRA
    assert "UNRELATED" not in var_map


# --- Loading ---


def test_load_environment_layers_files():
    with tempfile.TemporaryDirectory() as tmp:
        env_dir = Path(tmp) / "environments"
        env_dir.mkdir()
        (env_dir / "base.yaml").write_text(yaml.safe_dump({"H": "base", "PORT": 5432, "TLS": True}))
        (env_dir / "prod.yaml").write_text(yaml.safe_dump({"H": "prod"}))

        resolver = VariableResolver()
        asyncio.run(resolver.load_environment(tmp, "prod"))
        assert resolver.resolve("${H}:${PORT}:${TLS}").resolved == "prod:5432:true"

        asyncio.run(resolver.load_environment(tmp, "staging"))
        assert resolver.resolve("${H}").resolved == "base"


def test_load_environment_missing_files_are_empty():
    with tempfile.TemporaryDirectory() as tmp:
        resolver = VariableResolver()
        asyncio.run(resolver.load_environment(tmp, "prod"))
        assert resolver.get_variable_map() == {}
        assert resolver.resolve("${H:d}").resolved == "d"
