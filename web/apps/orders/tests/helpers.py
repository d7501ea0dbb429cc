ADDRESS = {
    "fullName": "Sita Sharma",
    "phone": "9800000000",
    "addressLine1": "Lazimpat 12",
    "city": "Kathmandu",
    "district": "Kathmandu",
}


def actor(user_id, role):
    """Headers the upstream auth layer forwards for an authenticated user."""
    return {"HTTP_X_USER_ID": user_id, "HTTP_X_USER_ROLE": role}


class DummyResp:
    """Minimal httpx-like response stub for adapter tests.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | None): JSON body to return from ``json()``.
        text (str): Raw body returned by ``text``.
    """

    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data or {}
        self.text = text

    def raise_for_status(self):
        import httpx

        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json
