import json
import stat
import time

import pytest

from micropanel.screens.throughput_client import (
    ClientState,
    ThroughputClient,
    bandwidth_label,
    build_iperf_command,
    format_bandwidth,
    parse_avahi_output,
    parse_iperf_output,
)
from micropanel.screens.throughput_server import ThroughputServer

TCP_JSON = {
    "start": {"connected": [{"socket": 5}]},
    "end": {
        "sum_sent": {"bits_per_second": 950000000.0, "retransmits": 3},
        "sum_received": {"bits_per_second": 940000000.0},
    },
}

UDP_JSON = {
    "end": {
        "sum": {
            "bits_per_second": 10485760.0,
            "jitter_ms": 0.0123,
            "lost_percent": 0.5,
            "lost_packets": 5,
            "packets": 1000,
        }
    }
}


def _script(tmp_path, body):
    path = tmp_path / "fake-iperf3"
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def _wait(pred, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not pred() and time.monotonic() < deadline:
        time.sleep(0.02)
    return pred()


# =====================================================
# PARSING
# =====================================================
def test_tcp_json_result():
    res = parse_iperf_output(json.dumps(TCP_JSON), "TCP")
    assert format_bandwidth(res.mbps) == "950.0Mbps"
    assert res.retransmits == 3


def test_udp_json_result():
    res = parse_iperf_output(json.dumps(UDP_JSON), "UDP")
    assert res.mbps == pytest.approx(10.48576)
    assert res.jitter_ms == pytest.approx(0.0123)
    assert res.lost_packets == 5
    assert res.packets == 1000


def test_truncated_json_falls_back_to_text_scan():
    text = json.dumps(TCP_JSON)[:-5]
    res = parse_iperf_output(text, "TCP")
    assert res is not None
    assert res.retransmits == 3


def test_garbage_is_unparseable():
    assert parse_iperf_output("iperf3: error - unable to connect to server", "TCP") is None


def test_format_bandwidth_units():
    assert format_bandwidth(0.5) == "500Kbps"
    assert format_bandwidth(12.345) == "12.3Mbps"
    assert format_bandwidth(9410.0) == "9.41Gbps"


def test_bandwidth_labels():
    assert bandwidth_label(0) == "Auto"
    assert bandwidth_label(500) == "500M"
    assert bandwidth_label(2500) == "2.5G"
    assert bandwidth_label(10000) == "10G"


def test_build_command_tcp_defaults():
    cmd = build_iperf_command("/usr/bin/iperf3", "10.0.0.2", 5201, 10, "TCP", 0, 1, False)
    assert cmd == ["/usr/bin/iperf3", "-c", "10.0.0.2", "-p", "5201", "-t", "10", "-J"]


def test_build_command_udp_options():
    cmd = build_iperf_command("iperf3", "10.0.0.2", 5202, 30, "UDP", 100, 4, True)
    assert cmd[8:] == ["-u", "-l", "9000", "-w", "1M", "-b", "100m", "-P", "4", "-R"]


def test_avahi_output_parsing():
    text = "\n".join([
        "+;eth0;IPv4;MicroPanel\\032iperf3\\032192.168.1.20;_iperf3._tcp;local",
        "+;eth0;IPv6;MicroPanel\\032iperf3\\032192.168.1.20;_iperf3._tcp;local",
        "=;eth0;IPv4;MicroPanel\\032iperf3\\032192.168.1.20;_iperf3._tcp;local;pi.local;192.168.1.20;5202;",
        "=;eth0;IPv4;lab-server;_iperf3._tcp;local;lab.local;192.168.1.30;5201;",
    ])
    servers = parse_avahi_output(text)
    assert [(s.ip, s.port) for s in servers] == [("192.168.1.20", 5202), ("192.168.1.30", 5201)]
    assert servers[0].name == "MicroPanel iperf3 192.168.1.20"


# =====================================================
# CLIENT SCREEN
# =====================================================
def _client(ctx, tmp_path, body):
    ctx.deps.add("throughputclient", "iperf3_path", _script(tmp_path, body))
    ctx.deps.add("throughputclient", "default_server_ip", "10.0.0.9")
    client = ThroughputClient(ctx, result_file=str(tmp_path / "iperf.json"),
                              avahi_file=str(tmp_path / "avahi.txt"))
    client.enter()
    return client


def test_client_runs_test_and_shows_results(ctx, backend, tmp_path):
    client = _client(ctx, tmp_path, f"echo '{json.dumps(TCP_JSON)}'")
    client.on_button()
    assert client.state is ClientState.TESTING

    assert _wait(lambda: (client.update(), client.state is ClientState.RESULTS)[1])
    texts = backend.texts()
    assert "Proto :TCP" in texts
    assert "Speed :950.0Mbps" in texts
    assert "Retrns:3" in texts
    assert "Enter to continu" in texts

    client.on_button()
    assert client.state is ClientState.START


def test_client_failed_run_returns_to_menu(ctx, tmp_path):
    client = _client(ctx, tmp_path, "exit 1")
    client.on_button()
    assert _wait(lambda: (client.update(), client.state is ClientState.START)[1])
    assert client.status == "Test failed"


def test_cancel_needs_two_presses(ctx, backend, tmp_path):
    client = _client(ctx, tmp_path, "sleep 10")
    client.on_button()
    client.on_button()
    assert client.state is ClientState.TESTING
    assert any(t.startswith("Press again") for t in backend.texts())
    client.on_button()
    assert client.state is ClientState.START
    assert not client.test.running


def test_defaults_from_dependencies(ctx, tmp_path):
    ctx.deps.add("throughputclient", "default_protocol", "udp")
    ctx.deps.add("throughputclient", "default_duration", "30")
    ctx.deps.add("throughputclient", "default_port", "99999")
    client = _client(ctx, tmp_path, "true")
    assert client.protocol == "UDP"
    assert client.duration == 30
    assert client.port == 5201
    assert client.server_ip == "10.0.0.9"


# =====================================================
# SERVER SCREEN
# =====================================================
def test_server_start_stop(ctx, backend, tmp_path, monkeypatch):
    monkeypatch.setattr("micropanel.screens.throughput_server.which",
                        lambda name: None if name == "avahi-publish" else name)
    ctx.deps.add("throughputserver", "iperf3_path", _script(tmp_path, "sleep 30"))
    ctx.deps.add("throughputserver", "default_port", "5300")
    server = ThroughputServer(ctx)
    server.enter()
    assert "Server(Stopped)" in backend.texts()
    assert "Port:5300" in backend.texts()

    server.on_button()
    assert server.running
    assert backend.text_at(0)[-1] == "Server(Running)"
    assert ">[Start]" in backend.texts()

    server.on_rotate(1)
    server.on_button()
    assert not server.running
    assert backend.text_at(0)[-1] == "Server(Stopped)"


def test_server_keeps_running_after_exit_until_shutdown(ctx, tmp_path, monkeypatch):
    monkeypatch.setattr("micropanel.screens.throughput_server.which", lambda name: None)
    ctx.deps.add("throughputserver", "iperf3_path", _script(tmp_path, "sleep 30"))
    server = ThroughputServer(ctx)
    server.enter()
    server.on_button()
    server.exit()
    assert server.running
    server.shutdown()
    assert not server.running
