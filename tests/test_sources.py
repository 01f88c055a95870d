import threading
import time

import pytest

from secureknock.events import KnockEvent
from secureknock.sources import bpf_filter, follow, kernlog_events, parse_kern_line

PREFIX = "FLAGGED_KNOCK:"
LINE = ("Oct 18 10:00:01 gate kernel: [12345.678901] FLAGGED_KNOCK:IN=eth0 OUT= "
        "MAC=52:54:00:12:34:56:52:54:00:65:43:21:08:00 SRC=203.0.113.7 DST=198.51.100.1 "
        "LEN=74 TOS=0x00 PREC=0x00 TTL=52 ID=4242 DF PROTO=TCP SPT=51234 DPT=7000 "
        "WINDOW=64240 RES=0x00 ACK PSH URGP=0")


def test_parse_kern_line():
    assert parse_kern_line(LINE, PREFIX, 12.5) == KnockEvent("203.0.113.7", 7000, 12.5)


@pytest.mark.parametrize("line", [
    LINE.replace(PREFIX, "UFW BLOCK:"),
    LINE.replace("DPT=7000 ", ""),
    LINE.replace("SRC=203.0.113.7", "SRC=bogus"),
    "",
])
def test_parse_kern_line_rejects(line):
    assert parse_kern_line(line, PREFIX, 0.0) is None


def test_follow_reads_complete_lines(tmp_path):
    path = tmp_path / "kern.log"
    path.write_text("first\nsecond\npartial")
    stop = threading.Event()
    stop.set()
    assert list(follow(str(path), stop, poll=0.01, from_start=True)) == ["first", "second"]


def test_follow_starts_at_end_by_default(tmp_path):
    path = tmp_path / "kern.log"
    path.write_text("old line\n")
    stop = threading.Event()
    stop.set()
    assert list(follow(str(path), stop, poll=0.01)) == []


def test_follow_waits_for_missing_file(tmp_path):
    stop = threading.Event()
    stop.set()
    assert list(follow(str(tmp_path / "nope.log"), stop, poll=0.01)) == []


def test_follow_picks_up_appended_lines(tmp_path):
    path = tmp_path / "kern.log"
    path.write_text("")
    stop = threading.Event()
    lines = follow(str(path), stop, poll=0.01)
    got = []

    def reader():
        for line in lines:
            got.append(line)
            stop.set()

    t = threading.Thread(target=reader)
    t.start()
    # give follow() time to open the file and seek to its end
    time.sleep(0.1)
    with open(path, "a") as f:
        f.write("appended\n")
    t.join(timeout=2)
    stop.set()
    assert got == ["appended"]


def test_kernlog_events(tmp_path):
    path = tmp_path / "kern.log"
    path.write_text("\n".join([LINE, "Oct 18 10:00:02 gate sshd[1]: noise",
                               LINE.replace("DPT=7000", "DPT=8000")]) + "\n")
    stop = threading.Event()
    stop.set()
    events = list(kernlog_events(str(path), PREFIX, stop, clock=lambda: 1.0,
                                 poll=0.01, from_start=True))
    assert events == [KnockEvent("203.0.113.7", 7000, 1.0), KnockEvent("203.0.113.7", 8000, 1.0)]


def test_bpf_filter():
    assert bpf_filter([7000, 8000]) == "tcp and (dst port 7000 or dst port 8000)"


def test_packet_to_event():
    scapy = pytest.importorskip("scapy.all")
    from secureknock.sources import packet_to_event

    pkt = scapy.IP(src="203.0.113.7", dst="198.51.100.1") / scapy.TCP(dport=7000) / scapy.Raw(b"xxChangeThisFlagxx")
    assert packet_to_event(pkt, b"ChangeThisFlag", 3.0) == KnockEvent("203.0.113.7", 7000, 3.0)
    bare = scapy.IP(src="203.0.113.7") / scapy.TCP(dport=7000)
    assert packet_to_event(bare, b"ChangeThisFlag", 3.0) is None
    udp = scapy.IP(src="203.0.113.7") / scapy.UDP(dport=7000) / scapy.Raw(b"ChangeThisFlag")
    assert packet_to_event(udp, b"ChangeThisFlag", 3.0) is None
