"""
NFC Bridge System Checker
=========================
Checks if the system is ready to run NFC Bridge Server.
Run this to diagnose issues on target machines.
"""

import socket
import subprocess
import sys

import config


def check_python():
    """Check Python version"""
    print(f"  Python: {sys.version}")
    if sys.version_info >= (3, 8):
        print("  ✓ Python version OK")
        return True
    print("  ✗ Python 3.8+ required")
    return False


def check_smartcard_service():
    """Check if the PC/SC service is running"""
    print("\n[Smart Card Service]")
    if sys.platform == "win32":
        command, running_marker = ['sc', 'query', 'SCardSvr'], 'RUNNING'
        hint = "sc start SCardSvr (as Administrator)"
    else:
        command, running_marker = ['systemctl', 'is-active', 'pcscd'], 'active'
        hint = "sudo systemctl start pcscd"

    try:
        result = subprocess.run(command, capture_output=True, text=True)
    except (OSError, subprocess.SubprocessError) as e:
        print(f"  ? Could not determine service status: {e}")
        return None

    output = result.stdout.strip()
    if running_marker in output and 'inactive' not in output:
        print("  ✓ Smart card service is running")
        return True
    print("  ✗ Smart card service is not running")
    print(f"  → Run: {hint}")
    return False


def check_pyscard():
    """Check that pyscard loads and can reach the resource manager"""
    print("\n[PC/SC Library]")
    try:
        from smartcard import scard
    except ImportError as e:
        print(f"  ✗ pyscard not installed: {e}")
        return False
    print("  ✓ pyscard library loaded")

    hresult, context = scard.SCardEstablishContext(scard.SCARD_SCOPE_USER)
    if hresult != scard.SCARD_S_SUCCESS:
        print(f"  ✗ Cannot reach PC/SC service: {scard.SCardGetErrorMessage(hresult)}")
        return False

    try:
        hresult, names = scard.SCardListReaders(context, [])
        if hresult == scard.SCARD_S_SUCCESS and names:
            print(f"  ✓ Found {len(names)} reader(s):")
            for name in names:
                print(f"    - {name}")
            return True
        print("  ✗ No card readers found")
        print("  → Check USB connection and driver installation")
        return False
    finally:
        scard.SCardReleaseContext(context)


def check_websockets():
    """Check if websockets is available"""
    print("\n[WebSocket Library]")
    try:
        import websockets
    except ImportError:
        print("  ✗ websockets not installed")
        return False
    print(f"  ✓ websockets {websockets.__version__}")
    return True


def check_port(host: str = config.HOST, port: int = config.PORT):
    """Check if the server port is available"""
    print(f"\n[Port {port}]")
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1)
            result = sock.connect_ex((host, port))
    except OSError as e:
        print(f"  ? Error checking port: {e}")
        return None

    if result == 0:
        print(f"  ⚠ Port {port} is in use (server may be running)")
    else:
        print(f"  ✓ Port {port} is available")
    return True


CRITICAL = ('smartcard_service', 'pyscard', 'websockets')


def main():
    print("=" * 60)
    print("  NFC Bridge System Checker")
    print("=" * 60)

    results = {}

    print("\n[Python Environment]")
    results['python'] = check_python()
    results['smartcard_service'] = check_smartcard_service()
    results['pyscard'] = check_pyscard()
    results['websockets'] = check_websockets()
    results['port'] = check_port()

    print("\n" + "=" * 60)
    print("  SUMMARY")
    print("=" * 60)

    all_ok = True
    critical_ok = True

    for name, status in results.items():
        if status is True:
            icon = "✓"
        elif status is False:
            icon = "✗"
            all_ok = False
            if name in CRITICAL:
                critical_ok = False
        else:
            icon = "?"
            all_ok = False

        print(f"  {icon} {name}")

    print("\n" + "-" * 60)

    if all_ok:
        print("  ✓ System is ready for NFC Bridge!")
    elif critical_ok:
        print("  ⚠ System has minor issues but may work")
    else:
        print("  ✗ System is NOT ready - fix critical issues above")

    print("=" * 60)
    return 0 if critical_ok else 1


if __name__ == "__main__":
    sys.exit(main())
