import argparse
import logging
import sys

from gw_backend.errors import CredentialError, GatewayError
from gw_backend.init_gateway import build_store, init_gateway, issue_peer
from gw_backend.logs import setup_logging
from gw_backend.openvpn import launch
from gw_backend.settings import get_settings
from gw_backend.system import CommandRunner

logger = logging.getLogger("vpn-gateway")


def _load_settings():
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    return settings


# ---------------------------------------------------
# Commande : run (provisioning + lancement d'OpenVPN)
# ---------------------------------------------------

def cmd_run(args, runner):
    settings = _load_settings()
    server_conf = init_gateway(settings, runner)
    returncode = launch(server_conf, runner, replace=not args.no_exec)
    return returncode or 0


# ---------------------------------------------------
# Commande : add-peer
# ---------------------------------------------------

def cmd_add_peer(args, runner):
    settings = _load_settings()
    store = build_store(settings, runner)
    if not store.ca_cert_path.is_file():
        raise CredentialError(f"No CA in {store.pki_dir}: start the gateway once with 'run' first")

    path = issue_peer(settings, store, args.name)
    print(f"[+] Peer ajouté : {args.name}")
    print(f"[+] Profil : {path}")
    return 0


# ---------------------------------------------------
# Commande : list-peers
# ---------------------------------------------------

def cmd_list(args, runner):
    settings = _load_settings()
    store = build_store(settings, runner)

    print("=== Serveur ===")
    print(f"Endpoint  : {settings.VPN_PUBLIC_HOST}:{settings.OVPN_PORT}/{settings.OVPN_PROTO}")
    print(f"Réseau    : {settings.OVPN_NET} via {settings.OVPN_DEV}")
    print(f"Upstream  : {settings.WG_INTERFACE}\n")

    print("=== Peers ===")
    peers = store.list_peers()
    if not peers:
        print("Aucun peer.")
    else:
        for name in peers:
            print(f"- {name}")
    return 0


# ---------------------------------------------------
# Commande : export-peer
# ---------------------------------------------------

def cmd_export_peer(args, runner):
    settings = _load_settings()
    store = build_store(settings, runner)

    # fails if the peer was never issued; export never issues anything
    store.peer_credential(args.name)
    path = issue_peer(settings, store, args.name)

    print(f"[OK] Config générée : {path}")
    print("\n--- Configuration ---\n")
    print(path.read_text(encoding="utf-8"))
    return 0


# ---------------------------------------------------
# CLI / Parser
# ---------------------------------------------------

def build_parser():
    parser = argparse.ArgumentParser(prog="vpn-gateway")
    sub = parser.add_subparsers(dest="cmd")

    # run
    p_run = sub.add_parser("run", help="provision everything, then hand over to OpenVPN")
    p_run.add_argument(
        "--no-exec",
        action="store_true",
        help="spawn OpenVPN as a child and relay signals instead of exec'ing it",
    )
    p_run.set_defaults(func=cmd_run)

    # add-peer
    p_add = sub.add_parser("add-peer", help="issue a client certificate and write its profile")
    p_add.add_argument("name")
    p_add.set_defaults(func=cmd_add_peer)

    # list-peers
    p_list = sub.add_parser("list-peers")
    p_list.set_defaults(func=cmd_list)

    # export-peer
    p_export = sub.add_parser("export-peer")
    p_export.add_argument("name")
    p_export.set_defaults(func=cmd_export_peer)

    return parser


def main(argv=None, runner=None):
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    runner = runner or CommandRunner()
    try:
        return args.func(args, runner)
    except GatewayError as e:
        logger.error(f"{e.kind}: {e}")
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
