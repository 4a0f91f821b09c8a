#!/usr/bin/env python3
"""
Command line entry point.

    python -m silencesplit analyze recording.opus [--session-id 580] [--dry-run]
    python -m silencesplit stats recordings/
    python -m silencesplit cleanup recordings/ --days 30
    python -m silencesplit serve --port 5000
"""

import sys
import json
import logging
import argparse

from silencesplit.config import Config
from silencesplit.exceptions import SilenceSplitError
from silencesplit.services import file_service
from silencesplit.services.post_recording_analyzer import PostRecordingAnalyzer
from silencesplit.services.process_tracker import ProcessTracker


class LoggingSplitRecorder:
    """Stands in for the database when analyzing a single file from the shell."""

    def record_split(self, session_id, split_data):
        logging.info(f"[CLI] Split for session {session_id}: "
                     f"original {split_data['original_duration'] / 60:.0f}min, "
                     f"split at {split_data['split_time'] / 60:.0f}min, "
                     f"space saved {split_data['space_saved'] / (1024 * 1024):.0f}MB")
        return {'success': True}


def _analyze(args) -> int:
    tracker = ProcessTracker()
    analyzer = PostRecordingAnalyzer.from_config(Config, LoggingSplitRecorder(), register_subprocess=tracker.register)
    try:
        if args.dry_run:
            metadata = analyzer.prober.get_metadata(args.file)
            result = analyzer.detect_extended_silence(args.file, metadata.duration_seconds)
            output = {'duration': metadata.duration_seconds, **vars(result), 'found': result.found}
        else:
            output = analyzer.analyze_recording(args.session_id, args.file).as_dict()
    except SilenceSplitError as e:
        logging.error(f"[CLI] Analysis failed: {e}")
        return 1
    finally:
        tracker.terminate_all()
    print(json.dumps(output, indent=2))
    return 0


def _stats(args) -> int:
    print(json.dumps(file_service.get_silence_file_statistics(args.directory, Config.SILENCE_MARKER), indent=2))
    return 0


def _cleanup(args) -> int:
    print(json.dumps(file_service.cleanup_old_silence_files(args.directory, args.days, Config.SILENCE_MARKER), indent=2))
    return 0


def _serve(args) -> int:
    from silencesplit import create_app
    app = create_app()
    app.run(host=args.host, port=args.port, debug=args.debug)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog='silencesplit',
                                     description='Split trailing silence off long meeting recordings')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    p_analyze = sub.add_parser('analyze', help='Analyze one finished recording and split it if needed')
    p_analyze.add_argument('file')
    p_analyze.add_argument('--session-id', default='cli-session')
    p_analyze.add_argument('--dry-run', action='store_true', help='Only sample and analyze; never modify the file')
    p_analyze.set_defaults(func=_analyze)

    p_stats = sub.add_parser('stats', help='Show silence segment statistics for a directory')
    p_stats.add_argument('directory')
    p_stats.set_defaults(func=_stats)

    p_cleanup = sub.add_parser('cleanup', help='Delete old silence segments from a directory')
    p_cleanup.add_argument('directory')
    p_cleanup.add_argument('--days', type=int, default=Config.SILENCE_RETENTION_DAYS)
    p_cleanup.set_defaults(func=_cleanup)

    p_serve = sub.add_parser('serve', help='Run the HTTP API')
    p_serve.add_argument('--host', default='127.0.0.1')
    p_serve.add_argument('--port', type=int, default=5000)
    p_serve.set_defaults(func=_serve)

    args = parser.parse_args(argv)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
