import re

PEM_BLOCK_RE = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----.*?-----END (?P=label)-----",
    re.DOTALL,
)


def read_pem_block(path, label="CERTIFICATE"):
    """
    First PEM block with this label. easy-rsa prefixes issued
    certificates with an 'openssl x509 -text' dump we don't want inlined.
    """
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    for m in PEM_BLOCK_RE.finditer(text):
        if m.group("label") == label:
            return m.group(0)
    raise ValueError(f"No {label} block in {path}")


def read_secret(path):
    # private keys and the tls-auth static key are inlined verbatim
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()
