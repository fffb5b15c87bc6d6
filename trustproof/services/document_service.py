from typing import Optional

import requests

from trustproof.errors import ServiceUnavailable
from trustproof.schemas import DocumentAnalysisRequest, DocumentAnalysisResponse

SERVICE_NAME = "document-analyze"


class DocumentAnalysisClient:
    """
    Client for the remote document-analysis service.
    The request is side-effect free on the service side, so retrying is safe.
    """

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 20.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def analyze(self, request: DocumentAnalysisRequest) -> DocumentAnalysisResponse:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = self.session.post(self.url, json=request.model_dump(), headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("unexpected response body")
            return DocumentAnalysisResponse.model_validate(data)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise ServiceUnavailable(SERVICE_NAME, str(e), status_code=status) from e
        except (requests.RequestException, ValueError) as e:
            # ValueError covers non-JSON bodies and schema mismatches
            raise ServiceUnavailable(SERVICE_NAME, str(e)) from e
