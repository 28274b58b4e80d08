from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeProber, FakeRunner, FakeTransfer, make_segments
from record_fetcher.errors import AssemblyError, SelectionError
from record_fetcher.models import Job, RecordInfo, SegmentTask, SelectionSet
from record_fetcher.runner import effective_worker_count, process_job, run_workers


RECORD = RecordInfo(record_id="R1abc", title="周末回放", quality="原画")
MERGED_NAME = "R1abc-周末回放-原画-complete.mp4"


def _job(tmp_path: Path, selection: SelectionSet, merge: bool = True, concurrency: int = 3) -> Job:
    return Job(
        record=RECORD,
        segments=tuple(make_segments(5)),
        selection=selection,
        output_dir=tmp_path / "out",
        concurrency=concurrency,
        merge=merge,
    )


def _concat_inputs(call: list[str]) -> list[str]:
    source = call[call.index("-i") + 1]
    assert source.startswith("concat:")
    return [Path(item).name for item in source[len("concat:"):].split("|")]


def test_effective_worker_count_never_exceeds_work() -> None:
    assert effective_worker_count(8, 2) == 2
    assert effective_worker_count(2, 5) == 2
    assert effective_worker_count(0, 5) == 1
    assert effective_worker_count(4, 0) == 0


def test_active_workers_never_exceed_concurrency(tmp_path: Path, make_ctx) -> None:
    transfer = FakeTransfer(delay=0.05)
    ctx = make_ctx(transfer=transfer)
    tasks = [SegmentTask(segment=segment, directory=tmp_path) for segment in make_segments(6)]

    results = run_workers(tasks, ctx, concurrency=2)

    assert len(results) == 6
    assert sorted(transfer.calls) == [1, 2, 3, 4, 5, 6]
    assert 1 <= transfer.max_active <= 2


def test_worker_count_adjustment_is_logged(tmp_path: Path, make_ctx) -> None:
    messages: list[str] = []
    tasks = [SegmentTask(segment=segment, directory=tmp_path) for segment in make_segments(2)]

    run_workers(tasks, make_ctx(), concurrency=8, log_cb=messages.append)

    assert any("8 -> 2" in message for message in messages)


def test_full_selection_merges_in_index_order_and_cleans_up(tmp_path: Path, config, make_ctx) -> None:
    runner = FakeRunner()
    transfer = FakeTransfer()
    ctx = make_ctx(runner=runner, transfer=transfer)
    job = _job(tmp_path, SelectionSet.all())

    result = process_job(job, config, ctx=ctx)

    out_dir = tmp_path / "out"
    assert len(runner.remux_calls) == 5
    assert len(runner.concat_calls) == 1
    assert _concat_inputs(runner.concat_calls[0]) == [f"part-{i}.ts" for i in range(1, 6)]
    assert result.merged_path == out_dir / MERGED_NAME
    assert sorted(path.name for path in out_dir.iterdir()) == [MERGED_NAME]
    assert [item.index for item in result.report.succeeded] == [1, 2, 3, 4, 5]


def test_partial_selection_skips_assembly(tmp_path: Path, config, make_ctx) -> None:
    runner = FakeRunner()
    ctx = make_ctx(runner=runner)
    job = _job(tmp_path, SelectionSet.of([2, 4]))

    result = process_job(job, config, ctx=ctx)

    assert runner.concat_calls == []
    assert not (tmp_path / "out" / "playlist.m3u8").exists()
    assert result.merged_path is None
    assert result.manifest_path is None
    assert set(result.results) <= {2, 4}
    assert [item.index for item in result.report.outcomes] == [2, 4]


def test_failed_segment_is_isolated_and_blocks_merge(tmp_path: Path, config, make_ctx) -> None:
    runner = FakeRunner()
    transfer = FakeTransfer(fail_indices={3})
    messages: list[str] = []
    job = _job(tmp_path, SelectionSet.all())

    result = process_job(job, config, ctx=make_ctx(runner=runner, transfer=transfer), log_cb=messages.append)

    assert sorted(result.results) == [1, 2, 4, 5]
    assert runner.concat_calls == []
    failed = result.report.failed
    assert [item.index for item in failed] == [3]
    assert failed[0].reason == "连接被重置"
    assert any("第3部分下载不成功" in message for message in messages)


def test_second_run_does_no_network_or_remux_work(tmp_path: Path, config, make_ctx) -> None:
    job = _job(tmp_path, SelectionSet.of([1, 3, 5]))
    first_runner, first_transfer = FakeRunner(), FakeTransfer()
    first = process_job(job, config, ctx=make_ctx(runner=first_runner, transfer=first_transfer))

    second_runner, second_transfer = FakeRunner(), FakeTransfer()
    second = process_job(job, config, ctx=make_ctx(runner=second_runner, transfer=second_transfer))

    assert sorted(first_transfer.calls) == [1, 3, 5]
    assert second_transfer.calls == []
    assert second_runner.calls == []
    assert second.results == first.results


def test_manifest_mode_keeps_intermediate_files(tmp_path: Path, config, make_ctx) -> None:
    runner = FakeRunner()
    job = _job(tmp_path, SelectionSet.all(), merge=False)

    result = process_job(job, config, ctx=make_ctx(runner=runner))

    out_dir = tmp_path / "out"
    assert runner.concat_calls == []
    assert result.manifest_path == out_dir / "playlist.m3u8"
    content = result.manifest_path.read_text(encoding="utf-8")
    assert "#EXT-X-TARGETDURATION:11" in content
    assert content.rstrip().endswith("#EXT-X-ENDLIST")
    for i in range(1, 6):
        assert (out_dir / f"part-{i}.ts").is_file()
        assert f"part-{i}.ts" in content


def test_existing_complete_recording_skips_everything(tmp_path: Path, config, make_ctx) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    (out_dir / MERGED_NAME).write_bytes(b"merged")
    prober = FakeProber({MERGED_NAME: 49.0})
    transfer = FakeTransfer()

    result = process_job(_job(tmp_path, SelectionSet.all()), config, ctx=make_ctx(prober=prober, transfer=transfer))

    assert result.skipped_existing
    assert result.merged_path == out_dir / MERGED_NAME
    assert transfer.calls == []


def test_existing_artifact_with_wrong_duration_is_not_overwritten(tmp_path: Path, config, make_ctx) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    merged = out_dir / MERGED_NAME
    merged.write_bytes(b"broken")
    runner = FakeRunner()
    prober = FakeProber({MERGED_NAME: 12.0})

    with pytest.raises(AssemblyError):
        process_job(_job(tmp_path, SelectionSet.all()), config, ctx=make_ctx(prober=prober, runner=runner))

    assert merged.read_bytes() == b"broken"
    assert runner.concat_calls == []
    assert (out_dir / "part-1.ts").is_file()


def test_selection_outside_segment_range_is_rejected(tmp_path: Path, config, make_ctx) -> None:
    with pytest.raises(SelectionError):
        process_job(_job(tmp_path, SelectionSet.of([7, 9])), config, ctx=make_ctx())

    assert not (tmp_path / "out").exists()


def test_merge_mode_second_run_reports_same_results(tmp_path: Path, config, make_ctx) -> None:
    job = _job(tmp_path, SelectionSet.all())
    prober = FakeProber({MERGED_NAME: 50.0})
    first = process_job(job, config, ctx=make_ctx(prober=prober))

    second_runner, second_transfer = FakeRunner(), FakeTransfer()
    second = process_job(job, config, ctx=make_ctx(prober=prober, runner=second_runner, transfer=second_transfer))

    out_dir = tmp_path / "out"
    assert second.skipped_existing
    assert second_transfer.calls == []
    assert second_runner.calls == []
    assert second.results == first.results == {i: out_dir / f"part-{i}.ts" for i in range(1, 6)}
    assert second.report == first.report
    assert second.merged_path == first.merged_path == out_dir / MERGED_NAME


def test_segments_not_numbered_from_one_are_rejected(tmp_path: Path, config, make_ctx) -> None:
    segments = tuple(segment for segment in make_segments(5) if segment.index != 3)
    job = Job(
        record=RECORD,
        segments=segments,
        selection=SelectionSet.all(),
        output_dir=tmp_path / "out",
        concurrency=2,
    )
    transfer = FakeTransfer()

    with pytest.raises(SelectionError):
        process_job(job, config, ctx=make_ctx(transfer=transfer))

    assert transfer.calls == []
    assert not (tmp_path / "out").exists()
