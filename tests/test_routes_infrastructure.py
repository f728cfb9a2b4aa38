"""
Integration Tests for /api/infra routes

The executor is scripted, so these tests check the argv each route builds,
the policy refusals that must happen before any command runs, and the JSON
shapes returned to the client.
"""

from command_portal import debug_logger as log

PS_LIST = """\
root               1  0.0  0.1 167744 11892 ?        Ss   Jan01   0:12 systemd
www-data        4242 12.5  3.2 912345 65432 ?        Sl   10:02   1:03 node
dev             5151  3.0  1.0 112233 20480 pts/0    S+   10:05   0:01 python3
"""

DPKG = """\
curl|7.88.1|install ok installed|500|command line tool for transferring data
htop|3.2.2|install ok installed|300|interactive processes viewer
zlib1g|1:1.2.13|install ok installed|164|compression library - runtime
"""


class TestProcesses:

    def test_sorted_listing_respects_limit(self, portal):
        portal.executor.respond(['ps', '-eo'], stdout=PS_LIST)
        response = portal.client.get('/api/infra/processes?sort=cpu&limit=2')
        body = response.get_json()

        assert response.status_code == 200
        assert len(body['processes']) == 2
        assert body['total'] == 3
        assert '--sort=-%cpu' in portal.executor.commands('ps')[0]['argv']

    def test_unknown_sort_falls_back_to_cpu(self, portal):
        portal.client.get('/api/infra/processes?sort=;reboot')
        assert '--sort=-%cpu' in portal.executor.commands('ps')[0]['argv']

    def test_pid_one_is_never_signalled(self, portal):
        for signal_name in ('TERM', 'KILL', 'HUP'):
            response = portal.client.post('/api/infra/processes/1/kill', json={'signal': signal_name})
            assert response.status_code == 403
            assert response.get_json()['error'] == 'Cannot kill critical process: PID 1'

        assert portal.executor.commands('kill') == []
        assert portal.executor.commands('ps') == []
        assert log.get_security_events(1)[0]['event'] == 'policy_denied'

    def test_critical_process_name_refused(self, portal):
        portal.executor.respond(['ps', '-p'], stdout='root     sshd\n')
        response = portal.client.post('/api/infra/processes/812/kill', json={})

        assert response.status_code == 403
        assert portal.executor.commands('kill') == []

    def test_kill_sends_requested_signal(self, portal):
        portal.executor.respond(['ps', '-p'], stdout='dev      node\n')
        response = portal.client.post('/api/infra/processes/4242/kill', json={'signal': 'SIGKILL'})
        body = response.get_json()

        assert response.status_code == 200
        assert body['name'] == 'node'
        assert body['signal'] == 'KILL'
        assert portal.executor.commands('kill')[0]['argv'] == ['kill', '-s', 'KILL', '4242']

    def test_kill_rejects_malformed_input(self, portal):
        assert portal.client.post('/api/infra/processes/12;rm/kill', json={}).status_code == 400
        portal.executor.respond(['ps', '-p'], stdout='dev      node\n')
        response = portal.client.post('/api/infra/processes/4242/kill', json={'signal': 'STOP'})
        assert response.status_code == 400
        assert portal.executor.commands('kill') == []

    def test_missing_process(self, portal):
        assert portal.client.post('/api/infra/processes/4242/kill', json={}).status_code == 404
        assert portal.client.get('/api/infra/processes/4242').status_code == 404

    def test_process_detail(self, portal):
        portal.executor.respond(
            ['ps', '-p'],
            stdout='4242     1 www-data    33    33 12.5  3.2 912345 65432 Sl   10:02 00:01:03 node server.js\n')
        body = portal.client.get('/api/infra/processes/4242').get_json()
        assert body['process']['pid'] == 4242
        assert body['process']['command'] == 'node server.js'
        assert 'cmdline' in body['process']


class TestPackages:

    def test_search_and_pagination(self, portal):
        portal.executor.respond(['dpkg-query'], stdout=DPKG)
        body = portal.client.get('/api/infra/packages?search=process&pageSize=10').get_json()

        assert [p['name'] for p in body['packages']] == ['htop']
        assert body['total'] == 1
        assert body['totalPages'] == 1

    def test_critical_package_removal_refused(self, portal):
        response = portal.client.post('/api/infra/packages/remove',
                                      json={'packageName': 'linux-image-6.1.0-18-amd64'})
        assert response.status_code == 403
        assert portal.executor.commands('apt-get') == []

    def test_remove_with_purge(self, portal):
        response = portal.client.post('/api/infra/packages/remove',
                                      json={'packageName': 'htop', 'purge': True})
        assert response.status_code == 200
        assert portal.executor.commands('apt-get')[0]['argv'] == ['apt-get', 'purge', '-y', 'htop']
        assert portal.executor.commands('apt-get')[0]['privileged'] is True

    def test_install_rejects_injection(self, portal):
        response = portal.client.post('/api/infra/packages/install', json={'packageName': 'curl; reboot'})
        assert response.status_code == 400
        assert response.get_json()['reason'] == 'invalid_package'
        assert portal.executor.commands('apt-get') == []

    def test_install_failure_is_generic(self, portal):
        portal.executor.respond(['apt-get', 'install'], stderr='E: Unable to locate package nope',
                                returncode=100)
        response = portal.client.post('/api/infra/packages/install', json={'packageName': 'nope'})
        body = response.get_json()

        assert response.status_code == 500
        assert body['error'] == 'Failed to install package'
        assert body['errorRef'].startswith('ERR-')
        assert 'locate' not in str(body)

    def test_search_needs_two_characters(self, portal):
        assert portal.client.get('/api/infra/packages/search?q=a').status_code == 400
        portal.executor.respond(['apt-cache'], stdout='htop - interactive processes viewer\n')
        body = portal.client.get('/api/infra/packages/search?q=htop').get_json()
        assert body['results'][0]['name'] == 'htop'
        assert portal.executor.commands('apt-cache')[0]['argv'] == ['apt-cache', 'search', '--', 'htop']


class TestSystemLogs:

    def test_journal_arguments(self, portal):
        portal.client.get('/api/infra/logs?unit=ssh.service&priority=err&lines=5000&search=Failed')
        argv = portal.executor.commands('journalctl')[0]['argv']

        assert argv[:6] == ['journalctl', '-o', 'json', '--no-pager', '-n', '1000']
        assert ['-u', 'ssh.service'] == argv[6:8]
        assert '--grep=Failed' in argv
        assert argv[-2:] == ['-b', '0']

    def test_all_boots(self, portal):
        portal.client.get('/api/infra/logs?boot=all')
        assert '-b' not in portal.executor.commands('journalctl')[0]['argv']

    def test_invalid_filters(self, portal):
        assert portal.client.get('/api/infra/logs?priority=9').status_code == 400
        assert portal.client.get('/api/infra/logs?unit=../../etc').status_code == 400
        assert portal.client.get('/api/infra/logs?since=now;reboot').status_code == 400
        assert portal.executor.commands('journalctl') == []


class TestNetwork:

    def test_ping_rejects_metacharacters(self, portal):
        response = portal.client.post('/api/infra/network/ping', json={'host': 'example.com; reboot'})
        assert response.status_code == 400
        assert portal.executor.commands('ping') == []

    def test_ping_clamps_count(self, portal):
        portal.executor.respond(['ping'], stdout=(
            '3 packets transmitted, 3 received, 0% packet loss, time 2002ms\n'
            'rtt min/avg/max/mdev = 1.0/2.0/3.0/0.5 ms\n'))
        body = portal.client.post('/api/infra/network/ping', json={'host': '10.0.0.1', 'count': 50}).get_json()

        assert body['success'] is True
        assert body['rtt']['avg'] == 2.0
        assert portal.executor.commands('ping')[0]['argv'] == ['ping', '-c', '10', '-W', '5', '10.0.0.1']

    def test_ping_unreachable(self, portal):
        body = portal.client.post('/api/infra/network/ping', json={'host': '10.9.9.9'}).get_json()
        assert body['success'] is False
        assert body['error'] == 'Host unreachable'

    def test_dns_record_type(self, portal):
        assert portal.client.post('/api/infra/network/dns',
                                  json={'host': 'example.com', 'type': 'AXFR'}).status_code == 400
        portal.executor.respond(['dig'], stdout='mail.example.com.\n')
        body = portal.client.post('/api/infra/network/dns', json={'host': 'example.com', 'type': 'mx'}).get_json()
        assert body['type'] == 'MX'
        assert body['records'] == ['mail.example.com.']

    def test_port_check_validates_port(self, portal):
        response = portal.client.post('/api/infra/network/port-check', json={'host': 'localhost', 'port': 70000})
        assert response.status_code == 400

    def test_hosts_file(self, portal):
        path = portal.services.config.get('paths', 'hosts_file')
        with open(path, 'w') as f:
            f.write('127.0.0.1 localhost\n10.0.0.5 nas nas.lan\n')
        body = portal.client.get('/api/infra/network/hosts').get_json()
        assert body['entries'][1] == {'ip': '10.0.0.5', 'hostnames': ['nas', 'nas.lan']}


class TestSecurity:

    def test_fail2ban_missing(self, portal):
        body = portal.client.get('/api/infra/security/fail2ban/status').get_json()
        assert body == {'installed': False, 'jails': [], 'totalBanned': 0}

    def test_fail2ban_jails(self, portal):
        portal.executor.respond(['fail2ban-client', 'status'],
                                stdout='Status\n|- Number of jail:\t1\n`- Jail list:\tsshd\n')
        portal.executor.respond(['fail2ban-client', 'status', 'sshd'],
                                stdout='|- Currently banned:\t2\n|  |- Total banned:\t9\n'
                                       '   `- Banned IP list:\t1.2.3.4 5.6.7.8\n')
        body = portal.client.get('/api/infra/security/fail2ban/status').get_json()

        assert body['installed'] is True
        assert body['totalBanned'] == 2
        assert body['jails'][0]['bannedIPs'] == ['1.2.3.4', '5.6.7.8']

    def test_unban_validates_ip(self, portal):
        response = portal.client.post('/api/infra/security/fail2ban/unban',
                                      json={'jail': 'sshd', 'ip': '1.2.3.4; reboot'})
        assert response.status_code == 400
        assert portal.executor.commands('fail2ban-client') == []

    def test_authorized_keys_absent(self, portal):
        assert portal.client.get('/api/infra/security/ssh/keys').get_json() == {'keys': []}


class TestScheduledJobs:

    CRONTAB = '# keep me\n0 2 * * * /usr/local/bin/backup.sh\n'

    def test_no_crontab_is_empty(self, portal):
        portal.executor.respond(['crontab', '-l'], stderr='no crontab for dev', returncode=1)
        body = portal.client.get('/api/infra/scheduled/cron').get_json()
        assert body['userCron'] == []
        assert body['systemCron'] == []

    def test_add_job_pipes_crontab(self, portal):
        portal.executor.respond(['crontab', '-l'], stdout=self.CRONTAB)
        response = portal.client.post('/api/infra/scheduled/cron',
                                      json={'schedule': '*/5 * * * *', 'command': 'echo hi'})

        assert response.status_code == 200
        install = [c for c in portal.executor.commands('crontab') if c['argv'] == ['crontab', '-']][0]
        assert install['input'] == self.CRONTAB + '*/5 * * * * echo hi\n'

    def test_add_job_rejects_bad_schedule(self, portal):
        response = portal.client.post('/api/infra/scheduled/cron',
                                      json={'schedule': '* * * * ; reboot', 'command': 'echo hi'})
        assert response.status_code == 400
        assert portal.executor.commands('crontab') == []

    def test_delete_job_by_index(self, portal):
        portal.executor.respond(['crontab', '-l'], stdout=self.CRONTAB)
        body = portal.client.delete('/api/infra/scheduled/cron/0').get_json()

        assert body['removed'] == '0 2 * * * /usr/local/bin/backup.sh'
        install = [c for c in portal.executor.commands('crontab') if c['argv'] == ['crontab', '-']][0]
        assert install['input'] == '# keep me\n'

    def test_delete_missing_job(self, portal):
        portal.executor.respond(['crontab', '-l'], stdout=self.CRONTAB)
        assert portal.client.delete('/api/infra/scheduled/cron/5').status_code == 404
        assert portal.client.delete('/api/infra/scheduled/cron/x').status_code == 400

    def test_toggle_critical_timer_refused(self, portal):
        response = portal.client.post('/api/infra/scheduled/timers/docker/toggle', json={'enabled': False})
        assert response.status_code == 403
        assert portal.executor.commands('systemctl') == []

    def test_toggle_timer(self, portal):
        assert portal.client.post('/api/infra/scheduled/timers/apt-daily/toggle',
                                  json={'enabled': 'no'}).status_code == 400
        body = portal.client.post('/api/infra/scheduled/timers/apt-daily/toggle',
                                  json={'enabled': False}).get_json()

        assert body['name'] == 'apt-daily.timer'
        assert portal.executor.commands('systemctl')[0]['argv'] == [
            'systemctl', 'disable', '--now', 'apt-daily.timer']
