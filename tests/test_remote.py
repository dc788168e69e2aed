from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
from unittest.mock import Mock, call

import pytest
from botocore.exceptions import ClientError

from k8s_hostpath_backup.errors import RemoteCredentialsError, RotationError
from k8s_hostpath_backup.remote import RemoteStore, RemoteStoreCredentials, load_remote_credentials

_BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _object(key: str, age_days: int) -> dict[str, object]:
    return {"Key": key, "Size": 1024, "LastModified": _BASE_TIME - timedelta(days=age_days)}


def _s3_client(*pages: list[dict[str, object]]) -> Mock:
    s3_client = Mock()
    s3_client.get_paginator.return_value.paginate.return_value = [
        {"Contents": contents} if contents else {} for contents in pages
    ]
    return s3_client


def _store(s3_client: Mock) -> RemoteStore:
    return RemoteStore(s3_client=s3_client, bucket="backups")


def _five_objects() -> list[dict[str, object]]:
    return [
        _object("apps_web_data_3", age_days=2),
        _object("apps_web_data_1", age_days=4),
        _object("apps_web_data_5", age_days=0),
        _object("apps_web_data_2", age_days=3),
        _object("apps_web_data_4", age_days=1),
    ]


def test_list_by_prefix_with_multiple_pages_returns_newest_first() -> None:
    s3_client = _s3_client(
        [_object("apps_web_data_old", age_days=10), _object("apps_web_data_new", age_days=0)],
        [],
        [_object("apps_web_data_mid", age_days=5)],
    )

    objects = _store(s3_client).list_by_prefix("apps_web_data_")

    assert [obj.key for obj in objects] == ["apps_web_data_new", "apps_web_data_mid", "apps_web_data_old"]
    s3_client.get_paginator.assert_called_once_with("list_objects_v2")
    s3_client.get_paginator.return_value.paginate.assert_called_once_with(Bucket="backups", Prefix="apps_web_data_")


def test_rotate_with_keep_two_of_five_deletes_three_oldest() -> None:
    s3_client = _s3_client(_five_objects())

    deleted = _store(s3_client).rotate("apps_web_data_", 2)

    assert deleted == ["apps_web_data_3", "apps_web_data_2", "apps_web_data_1"]
    assert s3_client.delete_object.call_args_list == [
        call(Bucket="backups", Key="apps_web_data_3"),
        call(Bucket="backups", Key="apps_web_data_2"),
        call(Bucket="backups", Key="apps_web_data_1"),
    ]


def test_rotate_with_keep_zero_deletes_nothing() -> None:
    s3_client = _s3_client(_five_objects())

    assert _store(s3_client).rotate("apps_web_data_", 0) == []
    s3_client.get_paginator.assert_not_called()
    s3_client.delete_object.assert_not_called()


def test_rotate_with_fewer_objects_than_keep_deletes_nothing() -> None:
    s3_client = _s3_client(_five_objects())

    assert _store(s3_client).rotate("apps_web_data_", 5) == []
    s3_client.delete_object.assert_not_called()


def test_rotate_with_delete_failure_stops_and_reports_partial_deletions() -> None:
    s3_client = _s3_client(_five_objects())
    s3_client.delete_object.side_effect = [
        None,
        ClientError({"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "DeleteObject"),
    ]

    with pytest.raises(RotationError, match="apps_web_data_2") as excinfo:
        _store(s3_client).rotate("apps_web_data_", 2)

    assert excinfo.value.deleted == ["apps_web_data_3"]
    assert isinstance(excinfo.value.cause, ClientError)
    assert s3_client.delete_object.call_count == 2


def test_upload_with_archive_sets_gzip_content_type(tmp_path: Path) -> None:
    s3_client = Mock()
    archive = tmp_path / "apps_web_data_20240101-000000.tar.gz"

    _store(s3_client).upload(archive, archive.name)

    s3_client.upload_file.assert_called_once_with(
        str(archive),
        "backups",
        archive.name,
        ExtraArgs={"ContentType": "application/gzip"},
    )


def test_download_with_missing_parent_creates_directory(tmp_path: Path) -> None:
    s3_client = Mock()
    destination = tmp_path / "staging" / "apps_web_data.tar.gz"

    _store(s3_client).download("apps_web_data.tar.gz", destination)

    assert destination.parent.is_dir()
    s3_client.download_file.assert_called_once_with("backups", "apps_web_data.tar.gz", str(destination))


def test_load_remote_credentials_with_account_id_builds_r2_endpoint(tmp_path: Path) -> None:
    path = tmp_path / "r2.json"
    path.write_text(
        json.dumps({"account_id": "abc123", "access_key_id": "AK", "secret_access_key": "SK", "bucket": "backups"}),
        encoding="utf-8",
    )

    credentials = load_remote_credentials(path)

    assert credentials.bucket == "backups"
    assert credentials.region == "auto"
    assert credentials.resolved_endpoint_url == "https://abc123.r2.cloudflarestorage.com"


def test_load_remote_credentials_with_missing_fields_raises_credentials_error(tmp_path: Path) -> None:
    path = tmp_path / "r2.json"
    path.write_text(json.dumps({"access_key_id": "AK"}), encoding="utf-8")

    with pytest.raises(RemoteCredentialsError, match="secret_access_key, bucket, account_id or endpoint_url"):
        load_remote_credentials(path)


def test_load_remote_credentials_with_invalid_json_raises_credentials_error(tmp_path: Path) -> None:
    path = tmp_path / "r2.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(RemoteCredentialsError, match="parsing credentials JSON"):
        load_remote_credentials(path)


def test_load_remote_credentials_with_missing_file_raises_credentials_error(tmp_path: Path) -> None:
    with pytest.raises(RemoteCredentialsError, match="reading credentials file"):
        load_remote_credentials(tmp_path / "missing.json")


def test_from_credentials_with_custom_endpoint_builds_s3_client(monkeypatch: pytest.MonkeyPatch) -> None:
    boto3_client = Mock()
    monkeypatch.setattr("k8s_hostpath_backup.remote.boto3.client", boto3_client)
    credentials = RemoteStoreCredentials(
        access_key_id="AK",
        secret_access_key="SK",
        bucket="backups",
        endpoint_url="http://minio.local:9000",
        region="us-east-1",
    )

    store = RemoteStore.from_credentials(credentials)

    assert store.bucket == "backups"
    assert store.s3_client is boto3_client.return_value
    boto3_client.assert_called_once_with(
        "s3",
        aws_access_key_id="AK",
        aws_secret_access_key="SK",
        endpoint_url="http://minio.local:9000",
        region_name="us-east-1",
    )
