# Ports commonly targeted by inbound attackers (remote access, file sharing, databases)
SENSITIVE_PORTS = frozenset({
    22, 23, 25, 445, 1433, 1521, 3306, 3389, 5432, 5900, 5985, 5986, 6379, 8080, 8443, 27017,
})

# Ports commonly used for C2, tunneling or backdoors (outbound)
SUSPICIOUS_OUTBOUND_PORTS = frozenset({
    4444, 5555, 6666, 6667, 6668, 6669,  # C2, IRC
    1080, 1194, 1723,  # SOCKS, OpenVPN, PPTP
    8888, 9090, 9999,
    31337,
})

# Credentialed services worth counting login attempts against
BRUTE_FORCE_PORTS = frozenset({
    21, 22, 23, 25, 110, 143, 443, 993, 995, 1433, 3306, 3389, 5432, 5900, 8443,
})
