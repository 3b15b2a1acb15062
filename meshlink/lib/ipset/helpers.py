import asyncio
import re
from dataclasses import dataclass

import structlog

from meshlink.lib.constants import IPSET_CMD_TIMEOUT_SECONDS

log = structlog.get_logger(__name__)

# add meshlink_allow 10.0.0.5 packets 12 bytes 3456
_SAVE_ADD_RE = re.compile(
    r"^add\s+(?P<set>\S+)\s+(?P<addr>\S+)(?:.*?\bpackets\s+(?P<packets>\d+))?(?:.*?\bbytes\s+(?P<bytes>\d+))?"
)


class IpsetCommandError(RuntimeError):
    def __init__(self, command: str, returncode: int | None, output: str):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"ipset command failed rc={returncode}: {command}: {output.strip()}")


@dataclass
class IpsetEntry:
    address: str
    packets: int = 0
    bytes: int = 0


async def _cmd(command: str, timeout: float = IPSET_CMD_TIMEOUT_SECONDS) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise IpsetCommandError(command, None, f"timed out after {timeout}s")

    output = stdout.decode(errors="replace") if stdout else ""
    return proc.returncode, output


async def ipset_run(ipset_bin: str, args: str, timeout: float = IPSET_CMD_TIMEOUT_SECONDS) -> str:
    command = f"{ipset_bin} {args}"
    returncode, output = await _cmd(command, timeout=timeout)
    if returncode != 0:
        raise IpsetCommandError(command, returncode, output)
    log.debug("ipset", command=command)
    return output


# ipset helpers
async def ipset_create(ipset_bin: str, set_name: str, counters: bool = False) -> None:
    opts = " counters" if counters else ""
    await ipset_run(ipset_bin, f"create {set_name} hash:ip family inet{opts} -exist")


async def ipset_add(ipset_bin: str, set_name: str, address: str) -> None:
    await ipset_run(ipset_bin, f"add {set_name} {address} -exist")


async def ipset_del(ipset_bin: str, set_name: str, address: str) -> None:
    await ipset_run(ipset_bin, f"del {set_name} {address} -exist")


async def ipset_list_entries(ipset_bin: str, set_name: str) -> dict[str, IpsetEntry]:
    out = await ipset_run(ipset_bin, f"list {set_name} -output save")
    return parse_ipset_save(out, set_name)


def parse_ipset_save(output: str, set_name: str) -> dict[str, IpsetEntry]:
    entries: dict[str, IpsetEntry] = {}
    for line in output.splitlines():
        m = _SAVE_ADD_RE.match(line.strip())
        if not m or m.group("set") != set_name:
            continue

        entries[m.group("addr")] = IpsetEntry(
            address=m.group("addr"),
            packets=int(m.group("packets") or 0),
            bytes=int(m.group("bytes") or 0),
        )
    return entries
