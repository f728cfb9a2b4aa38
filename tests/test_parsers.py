"""
Unit Tests for CLI output parsers

Each parser gets realistic tool output with a malformed line mixed in;
the malformed line must be dropped and counted, never raised.
"""

import json

from command_portal import parsers
from command_portal.parsers import DIAGNOSTICS


PS_OUTPUT = """\
root               1  0.0  0.1 167744 11892 ?        Ss   Jan01   0:12 systemd
www-data        4242 12.5  3.2 912345 65432 ?        Sl   10:02   1:03 node
garbage line
"""

DPKG_OUTPUT = """\
zlib1g|1:1.2.13|install ok installed|164|compression library - runtime
curl|7.88.1|install ok installed|500|command line tool for transferring data with URL syntax
oldpkg|1.0|deinstall ok config-files|10|removed but configured
broken-line-without-fields
"""

SS_LISTEN_OUTPUT = """\
State  Recv-Q Send-Q Local Address:Port Peer Address:Port Process
LISTEN 0      511          0.0.0.0:3000      0.0.0.0:*    users:(("node",pid=4242,fd=21))
LISTEN 0      128             [::]:22           [::]:*
LISTEN 0      4096   127.0.0.53%lo:53        0.0.0.0:*    users:(("systemd-resolve",pid=611,fd=14))
nonsense
"""

PING_OUTPUT = """\
PING example.com (93.184.216.34) 56(84) bytes of data.
64 bytes from 93.184.216.34: icmp_seq=1 ttl=56 time=11.2 ms

--- example.com ping statistics ---
4 packets transmitted, 4 received, 0% packet loss, time 3004ms
rtt min/avg/max/mdev = 11.020/11.231/11.502/0.180 ms
"""

AUTH_LOG = """\
Jan 10 10:00:01 host sshd[100]: Failed password for root from 203.0.113.5 port 51000 ssh2
Jan 10 10:00:05 host sshd[101]: Failed password for invalid user admin from 203.0.113.9 port 51002 ssh2
Jan 10 10:00:09 host sshd[102]: Failed password mangled entry
"""


class TestProcessParsers:

    def test_ps_list_drops_garbage(self):
        processes = parsers.parse_ps_list(PS_OUTPUT)

        assert [p['pid'] for p in processes] == [1, 4242]
        assert processes[1]['cpu'] == 12.5
        assert processes[1]['command'] == 'node'
        stats = DIAGNOSTICS.snapshot()['ps_list']
        assert stats['parsed'] == 2
        assert stats['dropped'] == 1
        assert stats['lastDropSample'] == 'garbage line'

    def test_ps_detail_and_owner(self):
        detail = parsers.parse_ps_detail(
            '4242     1 www-data    33    33 12.5  3.2 912345 65432 Sl   10:02 00:01:03 node server.js')
        assert detail['ppid'] == 1
        assert detail['command'] == 'node server.js'
        assert parsers.parse_ps_detail('') is None
        assert parsers.parse_ps_owner('root     systemd\n') == ('root', 'systemd')

    def test_none_input_is_empty(self):
        assert parsers.parse_ps_list(None) == []


class TestPackageParsers:

    def test_dpkg_installed_only_sorted(self):
        packages = parsers.parse_dpkg_packages(DPKG_OUTPUT)

        assert [p['name'] for p in packages] == ['curl', 'zlib1g']
        assert packages[1]['size'] == 164
        assert DIAGNOSTICS.snapshot()['dpkg_packages']['dropped'] == 1

    def test_apt_upgradable(self):
        text = ('Listing... Done\n'
                'curl/stable-security 7.88.1-10+deb12u5 amd64 [upgradable from: 7.88.1-10+deb12u4]\n')
        assert parsers.parse_apt_upgradable(text) == [
            {'name': 'curl', 'newVersion': '7.88.1-10+deb12u5', 'currentVersion': '7.88.1-10+deb12u4'},
        ]

    def test_apt_search_limit(self):
        text = '\n'.join(f'pkg{i} - description {i}' for i in range(80))
        assert len(parsers.parse_apt_search(text, limit=50)) == 50


class TestJournalParsers:

    def test_journal_json_newest_first(self):
        lines = [
            json.dumps({'__REALTIME_TIMESTAMP': '1700000000000000', 'PRIORITY': '6',
                        '_SYSTEMD_UNIT': 'ssh.service', 'MESSAGE': 'first', '_PID': '10'}),
            json.dumps({'__REALTIME_TIMESTAMP': '1700000001000000', 'PRIORITY': '3',
                        'SYSLOG_IDENTIFIER': 'kernel', 'MESSAGE': [104, 105]}),
            '{not json',
        ]
        entries = parsers.parse_journal_json('\n'.join(lines))

        assert [e['message'] for e in entries] == ['hi', 'first']
        assert entries[0]['unit'] == 'kernel'
        assert entries[1]['pid'] == 10
        assert DIAGNOSTICS.snapshot()['journal_json']['dropped'] == 1

    def test_units_and_disk_usage(self):
        assert parsers.parse_journal_units('b.service\na.service\nb.service\n') == ['a.service', 'b.service']
        usage = parsers.parse_journal_disk_usage(
            'Archived and active journals take up 1.2G in the file system.')
        assert usage['raw'].startswith('Archived')


class TestNetworkParsers:

    def test_listening_ports_sorted_with_process(self):
        ports = parsers.parse_ss_listening_ports(SS_LISTEN_OUTPUT)

        assert [p['port'] for p in ports] == [22, 53, 3000]
        assert ports[0]['ip'] == '::'
        assert ports[2]['process'] == 'node'
        assert ports[2]['pid'] == 4242
        assert DIAGNOSTICS.snapshot()['ss_listening']['dropped'] == 1

    def test_ss_connections(self):
        text = ('Netid State  Recv-Q Send-Q Local Address:Port Peer Address:Port\n'
                'tcp   LISTEN 0      128    0.0.0.0:22         0.0.0.0:*\n'
                'udp   UNCONN 0      0      127.0.0.1:323      0.0.0.0:*\n')
        connections = parsers.parse_ss_connections(text)
        assert [c['protocol'] for c in connections] == ['tcp', 'udp']
        assert connections[0]['localAddress'] == '0.0.0.0:22'

    def test_ip_addr_json(self):
        text = json.dumps([{'ifname': 'eth0', 'operstate': 'UP', 'address': 'aa:bb', 'mtu': 1500,
                            'addr_info': [{'family': 'inet', 'local': '10.0.0.2', 'prefixlen': 24}]}])
        interfaces = parsers.parse_ip_addr_json(text)
        assert interfaces[0]['addresses'][0]['address'] == '10.0.0.2'
        assert parsers.parse_ip_addr_json('not json') == []

    def test_ping_statistics(self):
        stats = parsers.parse_ping(PING_OUTPUT)
        assert stats['transmitted'] == 4
        assert stats['received'] == 4
        assert stats['time'] == 3004
        assert stats['rtt']['avg'] == 11.231

    def test_ping_unreachable(self):
        stats = parsers.parse_ping('2 packets transmitted, 0 received, 100% packet loss, time 1001ms')
        assert stats['received'] == 0
        assert stats['rtt'] is None

    def test_dig_and_hosts(self):
        assert parsers.parse_dig_short('93.184.216.34\n;; connection timed out\n') == ['93.184.216.34']
        entries = parsers.parse_hosts_file('127.0.0.1 localhost  # loopback\n# comment\nbogus\n')
        assert entries == [{'ip': '127.0.0.1', 'hostnames': ['localhost']}]


class TestSecurityParsers:

    def test_failed_ssh_newest_first(self):
        attempts = parsers.parse_failed_ssh(AUTH_LOG)

        assert [a['ip'] for a in attempts] == ['203.0.113.9', '203.0.113.5']
        assert attempts[0]['user'] == 'admin'
        assert attempts[1]['port'] == 51000
        assert DIAGNOSTICS.snapshot()['failed_ssh']['dropped'] == 1

    def test_who(self):
        sessions = parsers.parse_who('alice    pts/0        2024-01-10 10:00 (192.168.1.20)\n')
        assert sessions[0]['from'] == '192.168.1.20'

    def test_authorized_keys_hides_key_material(self):
        key = 'A' * 60
        text = f'# comment\nssh-ed25519 {key} alice@laptop\nnot-a-key line\n'
        keys = parsers.parse_authorized_keys(text, fingerprint=lambda line: 'SHA256:abc')

        assert len(keys) == 1
        assert keys[0]['index'] == 1
        assert keys[0]['comment'] == 'alice@laptop'
        assert keys[0]['fingerprint'] == 'SHA256:abc'
        assert key not in keys[0]['keyPreview']

    def test_fail2ban(self):
        assert parsers.parse_fail2ban_jails(
            'Status\n|- Number of jail:\t2\n`- Jail list:\tsshd, nginx-http-auth\n') == ['sshd', 'nginx-http-auth']
        jail = parsers.parse_fail2ban_jail(
            '|- Currently banned:\t2\n|  |- Total banned:\t7\n   `- Banned IP list:\t1.2.3.4 5.6.7.8\n', 'sshd')
        assert jail == {'name': 'sshd', 'currentlyBanned': 2, 'totalBanned': 7,
                        'bannedIPs': ['1.2.3.4', '5.6.7.8']}


class TestScheduleParsers:

    def test_crontab_ids_follow_job_lines(self):
        text = ('SHELL=/bin/bash\n'
                '# nightly backup\n'
                '0 2 * * * /usr/local/bin/backup.sh\n'
                '@reboot /usr/local/bin/start.sh\n'
                '*/5 * * * *\n'
                '15 * * * * echo hourly\n')
        jobs = parsers.parse_crontab(text)

        assert [j['id'] for j in jobs] == [0, 1, 3]
        assert jobs[0]['hour'] == '2'
        assert jobs[1]['schedule'] == '@reboot'
        assert jobs[2]['command'] == 'echo hourly'

    def test_system_crontab(self):
        jobs = parsers.parse_system_crontab('17 * * * * root cd / && run-parts --report /etc/cron.hourly\n')
        assert jobs[0]['id'] == 'system-0'
        assert jobs[0]['user'] == 'root'
        assert jobs[0]['command'].startswith('cd /')

    def test_timers_json(self):
        text = json.dumps([{'unit': 'apt-daily.timer', 'activates': 'apt-daily.service',
                            'next': 1700000000000000, 'left': None, 'last': 0, 'passed': None}])
        timers = parsers.parse_timers(text)
        assert timers[0]['name'] == 'apt-daily.timer'
        assert timers[0]['last'] is None
        assert timers[0]['next'].startswith('2023-11-14')

    def test_lsof(self):
        text = ('COMMAND  PID USER   FD   TYPE DEVICE SIZE/OFF NODE NAME\n'
                'node    4242 dev   21u  IPv4  12345      0t0  TCP *:3000 (LISTEN)\n')
        assert parsers.parse_lsof_listen(text) == {'name': 'node', 'pid': 4242}

    def test_env_file(self):
        text = '# db\nexport DB_HOST=localhost\nDB_PASS="s3cret"\n=novalue\nEMPTY=\n'
        assert parsers.parse_env_file(text) == [
            {'key': 'DB_HOST', 'value': 'localhost'},
            {'key': 'DB_PASS', 'value': 's3cret'},
            {'key': 'EMPTY', 'value': ''},
        ]


class TestParserContract:

    def test_crash_returns_empty_and_counts_failure(self):
        # a str subclass whose splitlines blows up exercises the guard
        class Exploding(str):
            def splitlines(self, *args, **kwargs):
                raise RuntimeError('boom')

        assert parsers.parse_ps_list(Exploding('x')) == []
        assert DIAGNOSTICS.snapshot()['ps_list']['failures'] == 1
