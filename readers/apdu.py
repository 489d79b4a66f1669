"""
APDU Commands for NFC card communication.
"""


class APDU:
    """Fixed APDU commands used by the card probe"""

    # PC/SC pseudo-APDU: GET DATA (UID)
    GET_UID = bytes([0xFF, 0xCA, 0x00, 0x00, 0x00])

    # PC/SC transparent command wrapping a FeliCa Polling frame
    # (system code FFFF, request code 01, time slot 00)
    FELICA_POLLING = bytes([0xFF, 0x00, 0x00, 0x00, 0x06, 0x00, 0xFF, 0xFF, 0x01, 0x00, 0x00])

    # Receive buffer size passed to transmit
    MAX_RESPONSE = 255

    SW_SUCCESS = bytes([0x90, 0x00])

    # FeliCa polling response layout
    FELICA_MIN_RESPONSE = 17
    IDM_SLICE = slice(2, 10)
    PMM_SLICE = slice(10, 18)

    @staticmethod
    def is_success(response: bytes) -> bool:
        """True if the response ends with status word 90 00"""
        return len(response) >= 2 and response[-2:] == APDU.SW_SUCCESS
