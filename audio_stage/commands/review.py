from __future__ import annotations

import argparse
import json
from typing import Any

from ..staging import StagingService
from .output import human_bytes, table


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def run(service: StagingService, args: argparse.Namespace) -> None:
    json_output = getattr(args, "json", False)
    match args.staging_command:
        case "list":
            records = service.list_records(status=args.status, scan_id=args.scan_id)
            if json_output:
                _dump([record.to_record() for record in records])
                return
            if not records:
                print("No staging records found.")
                return
            print(
                table(
                    ("id", "status", "artist", "album", "tracks", "size", "scan"),
                    (
                        (
                            record.id,
                            record.status.value,
                            record.artist_name,
                            record.album_name,
                            record.track_count,
                            human_bytes(record.total_size),
                            record.scan_id,
                        )
                        for record in records
                    ),
                )
            )
        case "show":
            detail = service.get_record(args.id)
            if json_output:
                _dump(detail.as_dict())
                return
            record = detail.record
            print(f"[{record.id}] {record.artist_name} - {record.album_name} ({record.status.value})")
            print(f"  staging path: {record.staging_path}")
            print(f"  sidecar:      {record.metadata_file} (checksum {'ok' if detail.checksum_ok else 'MISMATCH'})")
            if record.reviewed_by:
                print(f"  reviewed by:  {record.reviewed_by} at {record.reviewed_at}")
            if record.notes:
                print(f"  notes:        {record.notes}")
            if detail.sidecar_error:
                print(f"  sidecar error: {detail.sidecar_error}")
            if detail.sidecar:
                sidecar = detail.sidecar
                print(f"  year: {sidecar.album.year or '-'}  code: {sidecar.artist.directory_code}")
                for track in sidecar.tracks:
                    print(f"    {track.file_name}  <- {track.original_path}")
                for message in sidecar.validation.warnings:
                    print(f"  warning: {message}")
        case "stats":
            stats = service.stats()
            if json_output:
                _dump(stats)
                return
            print(f"Staging records: {stats['total']}")
            for status, count in sorted(stats["by_status"].items()):
                print(f"  {status}: {count}")
            print(f"  tracks: {stats['total_tracks']}")
            print(f"  size:   {human_bytes(stats['total_size'])}")
        case "approve":
            record = service.approve(args.id, args.reviewer, notes=args.notes)
            print(f"Approved staging record {record.id}")
        case "reject":
            record = service.reject(args.id, args.reviewer, args.reason)
            print(f"Rejected staging record {record.id}: {record.notes}")
        case "requeue":
            record = service.requeue(args.id)
            print(f"Staging record {record.id} is pending review again")
        case "promote":
            result = service.promote(args.id)
            if json_output:
                _dump(result.__dict__)
                return
            print(f"Promoted staging record {result.record_id} ({result.tracks} tracks) to {result.production_path}")
        case "delete":
            record = service.delete(args.id, remove_files=args.remove_files)
            print(f"Deleted staging record {record.id}")
        case _:
            raise SystemExit(f"Unknown staging command: {args.staging_command}")
