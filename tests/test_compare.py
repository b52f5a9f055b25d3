"""
Tests for multi-model catalog comparisons.
"""
import dataclasses

import pytest

from compare import STATUS_SUCCESS, ComparisonReport, ModelBenchmark, run_catalog_comparison
from conftest import BASE_URL, FakeDeployer, FakeEndpoint, make_client
from deploy import Catalog, CatalogError
from report import ReportWriter, render_comparison_table


CATALOG = Catalog.from_mapping(
    {
        "llama-3.2-1b": {
            "name": "Llama 3.2 1B Instruct",
            "size": "1B",
            "gpu_layers": 99,
            "vram_estimate": "1.2GB",
        },
        "qwen-2.5-7b": {
            "name": "Qwen 2.5 7B",
            "size": "7B",
            "gpu_layers": 33,
            "resources": {"gpu_memory": "8Gi"},
        },
        "phi-3-mini": {"name": "Phi 3 Mini", "size": "3.8B"},
    }
)


def _fails_for(model_id):
    return lambda config: config.catalog_entry is not None and config.catalog_entry.id == model_id


@pytest.mark.asyncio
async def test_comparison_continues_after_failed_deploy(client, run_config):
    deployer = FakeDeployer(fail_deploy=_fails_for("qwen-2.5-7b"))

    report = await run_catalog_comparison(
        client, deployer, CATALOG, ["llama-3.2-1b", "qwen-2.5-7b", "phi-3-mini"], run_config
    )

    assert [model.model_id for model in report.models] == ["llama-3.2-1b", "qwen-2.5-7b", "phi-3-mini"]
    llama, qwen, phi = report.models
    assert llama.ok and phi.ok
    assert llama.status == STATUS_SUCCESS
    assert llama.generation_toks_per_sec == 50
    assert llama.prompt_toks_per_sec == 500
    assert llama.model_name == "Llama 3.2 1B Instruct"
    assert llama.vram_estimate == "1.2GB"
    assert llama.total_requests == 0

    assert not qwen.ok
    assert qwen.error == "deploy failed: no capacity"
    assert qwen.model_size == "7B"
    assert qwen.vram_estimate == "8Gi"
    assert qwen.generation_toks_per_sec == 0

    assert [model.model_id for model in report.failed] == ["qwen-2.5-7b"]
    assert [config.catalog_entry.id for config in deployer.deployed] == ["llama-3.2-1b", "phi-3-mini"]
    assert deployer.released == 2
    assert not report.is_stress_test
    assert report.iterations == run_config.iterations


@pytest.mark.asyncio
async def test_unknown_model_fails_before_any_deploy(client, run_config):
    deployer = FakeDeployer()

    with pytest.raises(CatalogError, match="model 'mistral' not found in catalog"):
        await run_catalog_comparison(client, deployer, CATALOG, ["llama-3.2-1b", "mistral"], run_config)

    assert deployer.calls == []


@pytest.mark.asyncio
async def test_empty_target_list_is_rejected(client, run_config):
    with pytest.raises(ValueError):
        await run_catalog_comparison(client, FakeDeployer(), CATALOG, [" ", ""], run_config)


@pytest.mark.asyncio
async def test_preload_runs_before_each_deploy(client, run_config):
    deployer = FakeDeployer()

    await run_catalog_comparison(
        client, deployer, CATALOG, ["llama-3.2-1b", "phi-3-mini"], run_config, preload=True
    )

    preloads = [index for index, call in enumerate(deployer.calls) if call[0] == "preload"]
    deploys = [index for index, call in enumerate(deployer.calls) if call[0] == "deploy"]
    assert [deployer.calls[index][1] for index in preloads] == ["llama-3.2-1b", "phi-3-mini"]
    assert preloads[0] < deploys[0] < preloads[1] < deploys[1]


@pytest.mark.asyncio
async def test_gpu_layers_override_and_catalog_default(client, run_config):
    deployer = FakeDeployer()
    await run_catalog_comparison(client, deployer, CATALOG, ["llama-3.2-1b", "phi-3-mini"], run_config)
    assert [config.gpu_layers for config in deployer.deployed] == [99, -1]

    deployer = FakeDeployer()
    config = dataclasses.replace(run_config, gpu_layers=20)
    await run_catalog_comparison(client, deployer, CATALOG, ["llama-3.2-1b"], config)
    assert deployer.deployed[0].gpu_layers == 20


@pytest.mark.asyncio
async def test_stress_comparison_records_request_rates(client, run_config):
    config = dataclasses.replace(run_config, iterations=6, concurrency=2)

    report = await run_catalog_comparison(client, FakeDeployer(), None, ["local-model"], config)

    model = report.models[0]
    assert report.is_stress_test
    assert report.concurrency == 2
    assert model.model_name == "local-model"
    assert model.total_requests == 6
    assert model.requests_per_sec > 0
    assert model.error_rate == 0


@pytest.mark.asyncio
async def test_benchmark_failure_is_prefixed(run_config):
    async with make_client(FakeEndpoint(status_code=500)) as client:
        report = await run_catalog_comparison(client, FakeDeployer(), CATALOG, ["phi-3-mini"], run_config)

    assert report.models[0].error.startswith("benchmark failed: all iterations failed")
    assert len(report.failed) == 1


def _comparison(is_stress_test):
    return ComparisonReport(
        models=[
            ModelBenchmark(
                model_id="llama-3.2-1b",
                model_size="1B",
                status=STATUS_SUCCESS,
                generation_toks_per_sec=52.34,
                latency_p50_ms=410.4,
                latency_p99_ms=612.6,
                vram_estimate="1.2GB",
                total_requests=40,
                requests_per_sec=1.25,
                error_rate=2.5,
            ),
            ModelBenchmark(model_id="qwen-2.5-7b", model_size="7B", error="deploy failed: no capacity"),
        ],
        iterations=3,
        max_tokens=32,
        gpu=True,
        gpu_count=2,
        accelerator="cuda",
        is_stress_test=is_stress_test,
        concurrency=4,
        target_duration_s=120,
    )


def test_single_shot_comparison_table():
    table = render_comparison_table(_comparison(is_stress_test=False))

    assert "**Models:** 2  " in table
    assert "**Accelerator:** cuda  " in table
    assert "**GPU Count:** 2  " in table
    assert "**Concurrency:**" not in table
    assert "| Model | Size | Gen tok/s | P50 (ms) | P99 (ms) | VRAM | Status |" in table
    assert "| llama-3.2-1b | 1B | 52.3 | 410 | 613 | 1.2GB | ✅ |" in table
    assert "| qwen-2.5-7b | 7B | - | - | - | - | ❌ |" in table
    assert table.endswith("**Error (qwen-2.5-7b):** deploy failed: no capacity")


def test_stress_comparison_table():
    table = render_comparison_table(_comparison(is_stress_test=True))

    assert "**Concurrency:** 4  " in table
    assert "**Duration:** 2m0s per model  " in table
    assert "| Model | Size | Requests | RPS | tok/s | P50 | P99 | Error% | Status |" in table
    assert "| llama-3.2-1b | 1B | 40 | 1.2 | 52.3 | 410 | 613 | 2.5 | ✅ |" in table
    assert "| qwen-2.5-7b | 7B | - | - | - | - | - | - | ❌ |" in table


def test_report_writer_comparison_section(tmp_path):
    path = tmp_path / "report.md"

    with ReportWriter.open(path) as writer:
        writer.write_comparison_report(_comparison(is_stress_test=False))

    text = path.read_text(encoding="utf-8")
    assert "## Model Comparison" in text
    assert "**Error (qwen-2.5-7b):**" in text


def test_model_benchmark_round_trip():
    model = _comparison(is_stress_test=False).models[0]

    assert ModelBenchmark.from_dict(model.to_dict()) == model
    assert ComparisonReport(models=[model]).to_dict()["models"][0]["model_id"] == "llama-3.2-1b"
