from fastapi.security import HTTPBearer

# Missing credentials are not rejected here, protected endpoints raise
# `InvalidToken` themselves and public endpoints treat them as anonymous.
bearer = HTTPBearer(scheme_name="Access token", auto_error=False)
