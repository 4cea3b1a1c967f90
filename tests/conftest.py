import io
import json
from collections import Counter
from datetime import datetime, timezone

import fakeredis
import httpx
import pytest
import respx
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

import config

GATEWAY_HOST = "gateway.test"
GATEWAY_URL = f"http://{GATEWAY_HOST}/api"
STORAGE_HOST = "bucket.s3.test"


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 calls the gateway makes"""

    def __init__(self):
        self.objects = {}
        self.uploads = {}
        self.created = []
        self.completed = []
        self.aborted = []
        self._next_id = 0

    def put(self, key, data=b"", last_modified=None):
        self.objects[key] = {
            "Body": data,
            "LastModified": last_modified or datetime(2026, 1, 1, tzinfo=timezone.utc),
        }

    def create_multipart_upload(self, Bucket, Key, ContentType=None, Metadata=None):
        self._next_id += 1
        upload_id = f"UPLOAD-{self._next_id}"
        self.uploads[upload_id] = {
            "Key": Key,
            "Initiated": datetime.now(timezone.utc),
            "parts": {},
        }
        self.created.append({"Bucket": Bucket, "Key": Key, "ContentType": ContentType, "Metadata": Metadata})
        return {"UploadId": upload_id, "Key": Key}

    def generate_presigned_url(self, ClientMethod, Params=None, ExpiresIn=3600, HttpMethod=None):
        return (
            f"https://{STORAGE_HOST}/{Params['Key']}?uploadId={Params['UploadId']}"
            f"&partNumber={Params['PartNumber']}&X-Amz-Expires={ExpiresIn}"
        )

    def receive_part(self, upload_id, part_number, data):
        self.uploads[upload_id]["parts"][part_number] = data

    def list_parts(self, Bucket, Key, UploadId, PartNumberMarker=0):
        if UploadId not in self.uploads:
            raise client_error("NoSuchUpload", "ListParts")
        parts = [
            {"PartNumber": n, "ETag": f'"etag-{n}"', "Size": len(data), "LastModified": None}
            for n, data in sorted(self.uploads[UploadId]["parts"].items())
        ]
        return {"Parts": parts, "IsTruncated": False}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        if UploadId not in self.uploads:
            raise client_error("NoSuchUpload", "CompleteMultipartUpload")
        upload = self.uploads.pop(UploadId)
        self.completed.append({"Key": Key, "UploadId": UploadId, "Parts": MultipartUpload["Parts"]})
        body = b"".join(data for _, data in sorted(upload["parts"].items()))
        self.put(Key, body)
        return {"Location": f"https://{Bucket}.s3.amazonaws.com/{Key}", "Key": Key}

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key]["Body"])}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        if UploadId not in self.uploads:
            raise client_error("NoSuchUpload", "AbortMultipartUpload")
        del self.uploads[UploadId]
        self.aborted.append(UploadId)
        return {}

    def list_multipart_uploads(self, Bucket, Prefix="", **kwargs):
        uploads = [
            {"Key": upload["Key"], "UploadId": upload_id, "Initiated": upload["Initiated"]}
            for upload_id, upload in self.uploads.items()
            if upload["Key"].startswith(Prefix)
        ]
        return {"Uploads": uploads, "IsTruncated": False}

    def list_objects_v2(self, Bucket, Prefix="", **kwargs):
        contents = [
            {"Key": key, "Size": len(obj["Body"]), "LastModified": obj["LastModified"]}
            for key, obj in sorted(self.objects.items())
            if key.startswith(Prefix)
        ]
        return {"Contents": contents, "KeyCount": len(contents), "IsTruncated": False}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key]["Body"])}


class FakeLambdaClient:
    def __init__(self):
        self.invocations = []

    def invoke(self, FunctionName, InvocationType, Payload):
        self.invocations.append({
            "FunctionName": FunctionName,
            "InvocationType": InvocationType,
            "Payload": json.loads(Payload),
        })
        return {"StatusCode": 202}


@pytest.fixture
def storage_settings(monkeypatch):
    monkeypatch.setattr(config.settings, "aws_access_key", "test-access-key")
    monkeypatch.setattr(config.settings, "aws_secret_key", "test-secret-key")
    monkeypatch.setattr(config.settings, "aws_region", "us-east-2")
    monkeypatch.setattr(config.settings, "bucket_name", "test-bucket")
    monkeypatch.setattr(config.settings, "processing_lambda_function", None)
    return config.settings


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis()


@pytest.fixture
def fake_lambda():
    return FakeLambdaClient()


@pytest.fixture
def upload_service(storage_settings, fake_s3, fake_redis, fake_lambda):
    from services.upload_service import UploadService

    return UploadService(s3_client=fake_s3, redis_client=fake_redis, lambda_client=fake_lambda)


@pytest.fixture
def api(monkeypatch, upload_service, fake_s3):
    import main
    from services.processing_service import ProcessingService

    monkeypatch.setattr(main, "upload_service", upload_service)
    monkeypatch.setattr(main, "processing_service", ProcessingService(fake_s3))
    return TestClient(main.app)


class GatewayStub:
    """respx routes standing in for the gateway and the presigned part PUTs.

    `put_failures[n]` is how many PUTs of part n fail (HTTP 500) before one
    succeeds. `calls` keeps the order of sign/put/complete/abort requests.
    """

    def __init__(self, router):
        self.calls = []
        self.put_failures = {}
        self.put_attempts = Counter()
        self.received = {}
        self.init_payloads = []
        self.complete_payloads = []
        self.abort_payloads = []
        self.initialize_status = 200
        self.complete_status = 200
        self.abort_status = 200
        self.on_put = None
        self.upload_id = "UP-1"
        self.initialize_body = None

        router.route(method="POST", host=GATEWAY_HOST, path="/api/upload-presign").mock(side_effect=self._initialize)
        router.route(method="GET", host=GATEWAY_HOST, path="/api/upload-presign").mock(side_effect=self._sign)
        router.route(method="POST", host=GATEWAY_HOST, path="/api/complete-upload").mock(side_effect=self._complete)
        router.route(method="POST", host=GATEWAY_HOST, path="/api/abort-upload").mock(side_effect=self._abort)
        router.route(method="PUT", host=STORAGE_HOST).mock(side_effect=self._put)

    def ops(self, name):
        return [detail for op, detail in self.calls if op == name]

    def _initialize(self, request):
        payload = json.loads(request.content)
        self.init_payloads.append(payload)
        self.calls.append(("initialize", payload["fileId"]))
        if self.initialize_body is not None:
            return httpx.Response(200, json=self.initialize_body)
        if self.initialize_status != 200:
            return httpx.Response(self.initialize_status, json={
                "success": False,
                "message": "Multipart upload initialization failed",
                "error": "AccessDenied",
            })
        return httpx.Response(200, json={
            "success": True,
            "uploadId": self.upload_id,
            "fileId": payload["fileId"],
            "s3Key": f"uploads/videos/{payload['fileId']}_1700000000000.mp4",
            "fileName": f"{payload['fileId']}_1700000000000.mp4",
        })

    def _sign(self, request):
        part_number = int(request.url.params["partNumber"])
        self.calls.append(("sign", part_number))
        key = request.url.params["s3Key"]
        url = f"https://{STORAGE_HOST}/{key}?uploadId={request.url.params['uploadId']}&partNumber={part_number}"
        return httpx.Response(200, json={"success": True, "presignedUrl": url, "partNumber": part_number})

    def _put(self, request):
        part_number = int(request.url.params["partNumber"])
        self.calls.append(("put", part_number))
        self.put_attempts[part_number] += 1
        if self.on_put:
            self.on_put(part_number)
        if self.put_attempts[part_number] <= self.put_failures.get(part_number, 0):
            return httpx.Response(500, text="InternalError")
        self.received[part_number] = request.content
        return httpx.Response(200, headers={"ETag": f'"etag-{part_number}"'})

    def _complete(self, request):
        payload = json.loads(request.content)
        self.complete_payloads.append(payload)
        self.calls.append(("complete", len(payload["parts"])))
        if self.complete_status != 200:
            return httpx.Response(self.complete_status, json={
                "success": False,
                "message": "Upload completion failed",
                "error": "InvalidPart",
            })
        size = sum(len(data) for data in self.received.values())
        return httpx.Response(200, json={
            "success": True,
            "s3Url": f"https://test-bucket.s3.us-east-2.amazonaws.com/{payload['s3Key']}",
            "s3Key": payload["s3Key"],
            "fileSize": size,
            "fileName": payload["s3Key"].rsplit("/", 1)[-1],
            "partsCompleted": len(payload["parts"]),
        })

    def _abort(self, request):
        payload = json.loads(request.content)
        self.abort_payloads.append(payload)
        self.calls.append(("abort", payload["uploadId"]))
        if self.abort_status != 200:
            return httpx.Response(self.abort_status, json={"success": False, "message": "Multipart upload abort failed"})
        return httpx.Response(200, json={"success": True, "message": "Multipart upload aborted"})


@pytest.fixture
def gateway_stub():
    with respx.mock(assert_all_called=False) as router:
        yield GatewayStub(router)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
