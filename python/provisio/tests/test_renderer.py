"""Tests for output resolution and local file rendering."""

import os
import stat

import pytest

from provisio.engine.renderer import (
    BEGIN_MARKER,
    remove_local_files,
    render_local_files,
    replace_block,
    resolve_outputs,
    template_path,
)
from provisio.errors import TemplateError, UnresolvedOutputError
from provisio.models.state import OutputValue, ResourceState, State

SSH_DOC = """
resources:
  - kind: instance
    name: dev
    attributes: {ami: ami-1}
outputs:
  dev_ip: "${instance.dev.public_ip}"
  secret:
    value: "${instance.dev.id}"
    sensitive: true
local_files:
  - name: dev_node
    path: "%(path)s"
    template: "{host_os}-ssh-config.tpl"
    file_permission: "600"
    vars:
      hostname: "${output.dev_ip}"
      user: ubuntu
      instance: "${instance.dev.id}"
"""


@pytest.fixture
def ssh_setup(tmp_path, load):
    """Templates for two host OS variants plus declarations targeting tmp_path/ssh/config."""
    (tmp_path / "linux-ssh-config.tpl").write_text(
        "Host dev\n  HostName $hostname\n  User $user\n  UserKnownHostsFile /dev/null\n",
        encoding="utf-8",
    )
    (tmp_path / "windows-ssh-config.tpl").write_text(
        "Host dev\n  HostName $hostname\n  User $user\n  UserKnownHostsFile NUL\n",
        encoding="utf-8",
    )
    target = tmp_path / "ssh" / "config"
    decls = load(SSH_DOC % {"path": target})
    return decls, target


def _applied_state():
    state = State()
    state.record(
        ResourceState(
            kind="instance",
            name="dev",
            attributes={"ami": "ami-1", "id": "i-123", "public_ip": "198.51.100.10"},
        )
    )
    return state


def _with_outputs(decls, state):
    state.outputs = resolve_outputs(decls, state)
    return state


class TestResolveOutputs:
    def test_outputs_resolve_against_state(self, ssh_setup):
        decls, _ = ssh_setup
        outputs = resolve_outputs(decls, _applied_state())

        assert outputs["dev_ip"] == OutputValue(value="198.51.100.10")
        assert outputs["secret"].sensitive is True
        assert outputs["secret"].value == "i-123"

    def test_missing_resource_raises(self, ssh_setup):
        decls, _ = ssh_setup
        with pytest.raises(UnresolvedOutputError) as exc_info:
            resolve_outputs(decls, State())
        assert exc_info.value.output == "dev_ip"
        assert "instance.dev.public_ip" in exc_info.value.reference


class TestRenderLocalFiles:
    @pytest.mark.asyncio
    async def test_variant_follows_host_os(self, ssh_setup, settings):
        decls, target = ssh_setup
        state = _with_outputs(decls, _applied_state())

        await render_local_files(decls, state, settings.model_copy(update={"host_os": "windows"}))

        text = target.read_text(encoding="utf-8")
        assert "UserKnownHostsFile NUL" in text
        assert "HostName 198.51.100.10" in text

    def test_template_path_substitutes_host_os(self, ssh_setup, settings):
        decls, _ = ssh_setup
        path = template_path(decls.local_files[0], settings)
        assert os.path.basename(path) == "linux-ssh-config.tpl"

    @pytest.mark.asyncio
    async def test_writes_managed_block_and_keeps_other_content(self, ssh_setup, settings):
        decls, target = ssh_setup
        target.parent.mkdir()
        target.write_text("Host other\n  HostName example.org\n", encoding="utf-8")
        state = _with_outputs(decls, _applied_state())

        written = await render_local_files(decls, state, settings)
        first = target.read_text(encoding="utf-8")
        await render_local_files(decls, state, settings)

        assert written == [str(target)]
        assert first.startswith("Host other\n")
        assert first.count(BEGIN_MARKER.format(name="dev_node")) == 1
        assert "UserKnownHostsFile /dev/null" in first
        assert target.read_text(encoding="utf-8") == first
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_rerender_replaces_block_in_place(self, ssh_setup, settings):
        decls, target = ssh_setup
        state = _with_outputs(decls, _applied_state())
        await render_local_files(decls, state, settings)

        state.resources["instance.dev"].attributes["public_ip"] = "198.51.100.99"
        state = _with_outputs(decls, state)
        await render_local_files(decls, state, settings)

        text = target.read_text(encoding="utf-8")
        assert "198.51.100.99" in text
        assert "198.51.100.10" not in text

    @pytest.mark.asyncio
    async def test_unstored_output_raises(self, ssh_setup, settings):
        decls, _ = ssh_setup
        with pytest.raises(UnresolvedOutputError):
            await render_local_files(decls, _applied_state(), settings)

    @pytest.mark.asyncio
    async def test_missing_template_variant(self, ssh_setup, settings):
        decls, _ = ssh_setup
        state = _with_outputs(decls, _applied_state())
        with pytest.raises(TemplateError):
            await render_local_files(decls, state, settings.model_copy(update={"host_os": "plan9"}))

    @pytest.mark.asyncio
    async def test_remove_strips_block_and_deletes_empty_file(self, ssh_setup, settings):
        decls, target = ssh_setup
        state = _with_outputs(decls, _applied_state())
        await render_local_files(decls, state, settings)

        touched = await remove_local_files(decls)

        assert touched == [str(target)]
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_remove_keeps_unmanaged_content(self, ssh_setup, settings):
        decls, target = ssh_setup
        target.parent.mkdir()
        target.write_text("Host other\n", encoding="utf-8")
        await render_local_files(decls, _with_outputs(decls, _applied_state()), settings)

        await remove_local_files(decls)

        assert target.read_text(encoding="utf-8") == "Host other\n"


class TestReplaceBlock:
    def test_appends_when_absent(self):
        text = replace_block("a\n", "x", "body")
        assert text == "a\n# BEGIN provisio x\nbody\n# END provisio x\n"

    def test_adds_newline_before_block(self):
        assert replace_block("a", "x", "b").startswith("a\n# BEGIN")

    def test_replaces_only_named_block(self):
        text = replace_block("", "x", "one")
        text = replace_block(text, "y", "two")
        text = replace_block(text, "x", "three")

        assert "one" not in text
        assert text.index("three") < text.index("two")

    def test_remove_missing_block_is_noop(self):
        assert replace_block("a\n", "x", None) == "a\n"
