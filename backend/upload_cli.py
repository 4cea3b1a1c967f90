#!/usr/bin/env python3
"""
Video upload CLI
================

Uploads a video through the gateway using S3 multipart upload, then
optionally waits for HLS processing to finish.

Examples
--------
1) Upload a file:
    python upload_cli.py ./trailer.mp4 --api http://localhost:8000/api

2) Upload and wait for processing metadata (bearer token from the dashboard session):
    python upload_cli.py ./episode01.mkv --api https://admin.example.com/api --token "$TOKEN" --wait
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from pydantic import ValidationError

from uploader.cancellation import CancellationToken
from uploader.config import DEFAULT_POLL_TIMEOUT, MIB, UploadConfig, format_file_size, validate_file
from uploader.gateway_client import GatewayClient
from uploader.orchestrator import MultipartUploadOrchestrator
from uploader.part_uploader import PartUploader
from uploader.poller import PollReady, ProcessingPoller
from uploader.results import UploadProgress, UploadSuccess
from uploader.source_file import SourceFile


def print_progress(progress: UploadProgress) -> None:
    print(
        f"\r{progress.percent:3d}%  part {progress.current_part}/{progress.total_parts}  "
        f"{format_file_size(progress.bytes_uploaded)} / {format_file_size(progress.total_bytes)}",
        end="",
        flush=True,
    )


async def run(args: argparse.Namespace) -> int:
    try:
        config = UploadConfig(chunk_size=args.chunk_size_mb * MIB, max_retries=args.max_retries)
    except ValidationError as e:
        print(f"Invalid upload settings: {e}", file=sys.stderr)
        return 2
    source = SourceFile.from_path(args.file, content_type=args.content_type)

    rejection = validate_file(source, config)
    if rejection:
        print(rejection.message, file=sys.stderr)
        return 2

    async with GatewayClient(args.api, token=args.token) as gateway:
        part_uploader = PartUploader(config)
        try:
            orchestrator = MultipartUploadOrchestrator(gateway, part_uploader, config)
            outcome = await orchestrator.upload_file(source, CancellationToken(), on_progress=print_progress)
        finally:
            await part_uploader.aclose()
        print()

        if not isinstance(outcome, UploadSuccess):
            where = f" (part {outcome.part_number})" if outcome.part_number else ""
            print(f"Upload failed: {outcome.kind.value}{where}: {outcome.message}", file=sys.stderr)
            return 1

        print(f"Uploaded {source.name} as {outcome.file_id}")
        print(outcome.object_url)

        if not args.wait:
            return 0

        poller = ProcessingPoller(gateway, timeout=args.timeout)
        result = await poller.poll_until_ready(outcome.file_id, lambda status: None)
        if isinstance(result, PollReady):
            metadata = result.status.metadata
            print(f"Processing complete: {result.status.playlist_url}")
            if metadata:
                print(metadata.model_dump_json(exclude_none=True))
        else:
            print(f"Still processing after {args.timeout:.0f}s; check again later")
        return 0


def main(argv: Optional[list] = None) -> None:
    ap = argparse.ArgumentParser(description="Upload a video through the multipart upload gateway")
    ap.add_argument("file", help="Path to the video file")
    ap.add_argument("--api", default="http://localhost:8000/api", help="Gateway API base URL")
    ap.add_argument("--token", default=os.getenv("UPLOAD_API_TOKEN"), help="Bearer token for the gateway")
    ap.add_argument("--content-type", help="MIME type (guessed from the file name by default)")
    ap.add_argument("--chunk-size-mb", type=int, default=5, help="Part size in MiB (minimum 5)")
    ap.add_argument("--max-retries", type=int, default=3, help="Attempts per part")
    ap.add_argument("--wait", action="store_true", help="Wait for HLS processing to finish")
    ap.add_argument("--timeout", type=float, default=DEFAULT_POLL_TIMEOUT, help="Seconds to wait for processing")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    if not os.path.isfile(args.file):
        print(f"Not a file: {args.file}", file=sys.stderr)
        sys.exit(2)

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
