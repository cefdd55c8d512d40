"""Thin runners for the iptables and ipset command line tools, plus rule text helpers."""

from __future__ import annotations

import base64
import hashlib
import logging
import subprocess
from typing import Callable, Iterable, Optional, Sequence, Union

from kuberouter.netpol.rules import IPSetTable

log = logging.getLogger(__name__)

Executor = Callable[[Sequence[str], Optional[str]], subprocess.CompletedProcess]

_UUID_LENGTH = 16


class CommandError(RuntimeError):
    """An external command exited with an unexpected status."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        message = f"running {' '.join(self.argv)} failed with exit status {returncode}"
        if output.strip():
            message += f": {output.strip()}"
        super().__init__(message)


def run_command(argv: Sequence[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run argv, feeding input_text on stdin, and capture its output as text."""
    try:
        return subprocess.run(
            list(argv), input=input_text, capture_output=True, text=True, check=False
        )
    except FileNotFoundError as err:
        raise CommandError(argv, 127, str(err)) from err


def _check(
    executor: Executor,
    argv: Sequence[str],
    input_text: Optional[str] = None,
    accepted: Iterable[int] = (0,),
) -> subprocess.CompletedProcess:
    result = executor(argv, input_text)
    if result.returncode not in tuple(accepted):
        output = (result.stderr or "") + (result.stdout or "")
        raise CommandError(argv, result.returncode, output)
    return result


def add_uuid_for_rule_spec(chain: str, rule_spec: Sequence[str]) -> tuple[list[str], str]:
    """Tag the rule's comment with a hash of chain and rule.

    Returns the tagged rule spec (a new list) and the hash that was appended.
    """
    spec = list(rule_spec)
    digest = hashlib.sha256((chain + "".join(spec)).encode()).digest()
    encoded = base64.b32encode(digest).decode("ascii")[:_UUID_LENGTH]
    for idx, part in enumerate(spec):
        if part == "--comment" and idx + 1 < len(spec):
            spec[idx + 1] = f"{spec[idx + 1]} - {encoded}"
            return spec, encoded
    raise ValueError(f"could not find a comment in the ruleSpec string given: {' '.join(spec)}")


def append_unique_rule(filter_table_text: str, chain: str, args: Sequence[str]) -> str:
    """Return the table text with the rule moved to (or added at) the end, exactly once."""
    rule = " ".join(args)
    lines = filter_table_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    kept = [line for line in lines if not (chain in line and rule in line)]
    kept.append(f"-A {chain} {rule}")
    return "\n".join(kept) + "\n"


class IptablesRunner:
    """Runs iptables, iptables-save and iptables-restore."""

    def __init__(
        self,
        binary: str = "iptables",
        save_binary: str = "iptables-save",
        restore_binary: str = "iptables-restore",
        wait: bool = True,
        executor: Executor = run_command,
    ) -> None:
        self.binary = binary
        self.save_binary = save_binary
        self.restore_binary = restore_binary
        self.wait = wait
        self.executor = executor

    def _argv(self, table: str, *args: str) -> list[str]:
        argv = [self.binary]
        if self.wait:
            argv.append("--wait")
        return [*argv, "-t", table, *args]

    def save(self, table: str) -> str:
        """Dump a table in iptables-restore format."""
        return _check(self.executor, [self.save_binary, "-t", table]).stdout or ""

    def restore(self, table: str, data: Union[str, bytes]) -> None:
        """Load iptables-restore text into a table."""
        if isinstance(data, bytes):
            data = data.decode()
        argv = [self.restore_binary]
        if self.wait:
            argv.append("--wait")
        _check(self.executor, [*argv, "-T", table], data)

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """True when the rule is present in the chain."""
        result = _check(self.executor, self._argv(table, "-C", chain, *args), accepted=(0, 1))
        return result.returncode == 0

    def insert(self, table: str, chain: str, position: int, *args: str) -> None:
        _check(self.executor, self._argv(table, "-I", chain, str(position), *args))

    def delete(self, table: str, chain: str, *args: str) -> None:
        """Delete a rule given by spec or by its 1-based number."""
        _check(self.executor, self._argv(table, "-D", chain, *args))

    def list_rules(self, table: str, chain: str) -> list[str]:
        """The chain's rules in -S format, policy or chain declaration first."""
        out = _check(self.executor, self._argv(table, "-S", chain)).stdout or ""
        return [line for line in out.splitlines() if line]

    def list_chains(self, table: str) -> list[str]:
        """Names of every chain in the table, builtin chains first."""
        out = _check(self.executor, self._argv(table, "-S")).stdout or ""
        chains = []
        for line in out.splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[0] in ("-P", "-N"):
                chains.append(fields[1])
        return chains

    def chain_exists(self, table: str, chain: str) -> bool:
        result = _check(self.executor, self._argv(table, "-n", "-L", chain), accepted=(0, 1))
        return result.returncode == 0

    def new_chain(self, table: str, chain: str) -> None:
        _check(self.executor, self._argv(table, "-N", chain))

    def append_unique(self, table: str, chain: str, *args: str) -> None:
        """Append the rule unless the chain already holds it."""
        if not self.exists(table, chain, *args):
            _check(self.executor, self._argv(table, "-A", chain, *args))


class IpsetRunner:
    """Runs the ipset tool."""

    def __init__(self, binary: str = "ipset", executor: Executor = run_command) -> None:
        self.binary = binary
        self.executor = executor

    def list_set_names(self) -> list[str]:
        out = _check(self.executor, [self.binary, "list", "-n"]).stdout or ""
        return [line.strip() for line in out.splitlines() if line.strip()]

    def destroy(self, name: str) -> None:
        _check(self.executor, [self.binary, "destroy", name])

    def restore(self, ipset_table: IPSetTable) -> None:
        """Create every set of the table and replace its entries."""
        script = self._restore_script(ipset_table)
        if script:
            _check(self.executor, [self.binary, "restore", "-exist"], script)

    @staticmethod
    def _restore_script(ipset_table: IPSetTable) -> str:
        lines: list[str] = []
        for ipset in ipset_table:
            family = "inet6" if any(":" in e[0] for e in ipset.entries if e) else "inet"
            lines.append(f"create {ipset.name} {ipset.set_type} family {family} timeout 0")
            lines.append(f"flush {ipset.name}")
            lines.extend(f"add {ipset.name} {' '.join(entry)}" for entry in ipset.entries)
        return "\n".join(lines) + "\n" if lines else ""