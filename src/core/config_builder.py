SERVER_TEMPLATE = """port {port}
proto {proto}
dev {dev}

user {user}
group {group}

ca {ca}
cert {cert}
key {key}
dh {dh}

tls-auth {tls_auth} 0
cipher {cipher}
auth {auth}
tls-version-min {tls_version_min}

server {network} {netmask}
topology subnet

push "redirect-gateway def1 bypass-dhcp"
{push_dns}
keepalive {keepalive_interval} {keepalive_timeout}
persist-key
persist-tun

verb {verb}
status {status_log}
log-append {log_append}
"""

DNS_PUSH = 'push "dhcp-option DNS {server}"\n'

CLIENT_TEMPLATE = """client
dev tun
proto {proto}
remote {host} {port}
resolv-retry infinite
nobind
persist-key
persist-tun

cipher {cipher}
auth {auth}
remote-cert-tls server
tls-version-min {tls_version_min}
key-direction 1
{mtu_block}
verb {verb}

<ca>
{ca}
</ca>

<cert>
{cert}
</cert>

<key>
{key}
</key>

<tls-auth>
{tls_auth}
</tls-auth>
"""

MTU_BLOCK = """
; MTU tuning (keeps tunnelled packets inside the upstream WireGuard MTU)
tun-mtu {tun_mtu}
mssfix {mssfix}
"""


def generate_server_config(params):
    push_dns = "".join(DNS_PUSH.format(server=d) for d in params.dns)
    interval, timeout = params.keepalive
    return SERVER_TEMPLATE.format(
        port=params.port,
        proto=params.proto,
        dev=params.dev,
        user=params.user,
        group=params.group,
        ca=params.ca_path,
        cert=params.cert_path,
        key=params.key_path,
        dh=params.dh_path,
        tls_auth=params.tls_auth_path,
        cipher=params.cipher,
        auth=params.auth,
        tls_version_min=params.tls_version_min,
        network=params.network,
        netmask=params.netmask,
        push_dns=push_dns,
        keepalive_interval=interval,
        keepalive_timeout=timeout,
        verb=params.verb,
        status_log=params.status_log,
        log_append=params.log_append,
    )


def generate_client_config(host, port, proto, options, ca, cert, key, tls_auth):
    mtu_block = ""
    if options.tun_mtu and options.mssfix:
        mtu_block = MTU_BLOCK.format(tun_mtu=options.tun_mtu, mssfix=options.mssfix)
    return CLIENT_TEMPLATE.format(
        proto=proto,
        host=host,
        port=port,
        cipher=options.cipher,
        auth=options.auth,
        tls_version_min=options.tls_version_min,
        mtu_block=mtu_block,
        verb=options.verb,
        ca=ca,
        cert=cert,
        key=key,
        tls_auth=tls_auth,
    )
