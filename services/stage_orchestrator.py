"""
阶段编排器 (Stage Orchestrator)

四个阶段依次执行，每次执行：
前置条件检查 -> 构建提示词 (阶段 2-4 附加跨阶段上下文) -> 调用模型 -> 解析 JSON
-> 导师评审 -> (分数低于阈值且有问题时) 修正一次 -> 落库实体 -> 提取记号 -> 推进项目进度。
"""
import logging
import threading
import time
import weakref
from typing import Callable, Optional

from config.loader import get_stage_defaults
from core.exceptions import (
    InvalidStageError, ProjectNotFoundError, StageIncompleteError, StageAlreadyCompletedError,
    StageInProgressError, ConfigurationError, PreconditionError
)
from core.project_manager import ProjectManager
from core.schemas import AIConfig, ProjectSpec, StageResult, STAGE_NAMES
from core.stage_outputs import parse_stage_output
from chains import parse_json_output, build_options
from infra.llm.provider import AIProvider
from infra.storage.kv_cache import KVCache
from prompts.manager import build_stage_prompt
from services.context_manager import FullContextManager
from services.mentor_validator import MentorValidator
from services.uaol_context_manager import UAOLContextManager

logger = logging.getLogger(__name__)

TOTAL_STAGES = 4
DEFAULT_STALE_STAGE_SECONDS = 600


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class StageOrchestrator:
    """
    Args:
        store: ObjectStore
        config: 全局配置 (load_config() 的结果)
        provider_factory: AIConfig -> AIProvider，默认按 providers 配置构建
        cache: 上下文与记号共用的 KVCache
        mentor: 自定义评审器，默认按 mentor 配置构建
    """

    def __init__(self, store, config: dict, provider_factory: Optional[Callable] = None,
                 cache: Optional[KVCache] = None, mentor: Optional[MentorValidator] = None):
        self.store = store
        self.config = config
        context_settings = config.get("context", {})
        self.cache = cache or KVCache(default_ttl=context_settings.get("cache_ttl_seconds", 3600))
        self.full_context = FullContextManager(store, self.cache, ttl=context_settings.get("cache_ttl_seconds", 3600))
        self.compact_context = UAOLContextManager(store, self.cache, context_settings)
        self.strategies = {
            self.full_context.name: self.full_context,
            self.compact_context.name: self.compact_context,
        }
        self.default_strategy = context_settings.get("strategy", "full")
        self.provider_factory = provider_factory or (lambda ai_config: AIProvider(ai_config.provider, config))
        self.mentor = mentor or MentorValidator(config.get("mentor", {}))
        self.threshold = config.get("mentor", {}).get("threshold", 70)
        self.stale_stage_seconds = config.get("storage", {}).get("stale_stage_seconds", DEFAULT_STALE_STAGE_SECONDS)
        # 锁只在执行期间被持有，之后随引用释放而回收
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # --- 项目 ---

    def create_project(self, spec: ProjectSpec) -> dict:
        return ProjectManager.create_project(self.store, spec)

    def get_status(self, project_id: int) -> dict:
        return ProjectManager.get_project_status(self.store, project_id)

    def list_projects(self, **filters) -> dict:
        return ProjectManager.list_projects(self.store, **filters)

    def get_notations(self, project_id: int, expand: bool = False) -> dict:
        context = self.compact_context.load_context(project_id)
        if expand:
            context = dict(context, expanded=self.compact_context.expand_notations(project_id))
        return context

    # --- 阶段执行 ---

    def _project_lock(self, project_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(project_id, threading.Lock())

    def _strategy(self, ai_config: AIConfig):
        mode = ai_config.context_mode or self.default_strategy
        strategy = self.strategies.get(mode)
        if strategy is None:
            raise ConfigurationError(f"Unknown context mode '{mode}'. Must be one of: {', '.join(self.strategies)}")
        return strategy

    def _check_preconditions(self, project_id: int, stage_number: int) -> tuple:
        """
        返回 (项目, 上一阶段输出)。任何检查失败都不会产生写入。
        正在执行的阶段由 begin_stage 判断，超时的 in_progress 记录会在那里按失败处理。
        """
        project = self.store.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(project_id)

        previous_output = None
        if stage_number > 1:
            previous = self.store.get_stage(project_id, stage_number - 1)
            if not previous or previous["status"] != "completed":
                raise StageIncompleteError(stage_number - 1)
            previous_output = previous["output_data"]

        existing = self.store.get_stage(project_id, stage_number)
        if existing and existing["status"] == "completed":
            raise StageAlreadyCompletedError(stage_number)
        return project, previous_output

    def execute_stage(self, project_id: int, stage_number: int, ai_config: Optional[AIConfig] = None) -> StageResult:
        """
        执行项目的某个阶段。

        Raises:
            PreconditionError: 项目不存在、阶段号非法、上一阶段未完成、阶段已完成或正在执行。
            AIInvocationError / PersistenceError / OutputValidationError: 阶段被标记为 failed 后重新抛出。
        """
        if not isinstance(stage_number, int) or isinstance(stage_number, bool) or not 1 <= stage_number <= TOTAL_STAGES:
            raise InvalidStageError(stage_number)
        ai_config = ai_config or AIConfig()

        lock = self._project_lock(project_id)
        if not lock.acquire(blocking=False):
            logger.warning(f"项目 {project_id} 已有阶段正在执行，拒绝阶段 {stage_number} 的请求")
            raise StageInProgressError(project_id, stage_number)
        try:
            try:
                project, previous_output = self._check_preconditions(project_id, stage_number)
                strategy = self._strategy(ai_config)
                provider = self.provider_factory(ai_config)
                stage_name = STAGE_NAMES[stage_number]
                # 阶段记录与项目状态在同一事务中写入
                stage = self.store.begin_stage(project_id, stage_number, stage_name, input_data=previous_output,
                                               stale_after_seconds=self.stale_stage_seconds)
            except PreconditionError as e:
                logger.warning(f"项目 {project_id} 阶段 {stage_number} 前置条件不满足: {e}")
                raise
            logger.info(f"开始执行项目 {project_id} 阶段 {stage_number} ({stage_name})，上下文模式 {strategy.name}")

            started = time.perf_counter()
            try:
                return self._run_stage(project, stage, strategy, provider, ai_config, started)
            except Exception as e:
                logger.error(f"项目 {project_id} 阶段 {stage_number} 执行失败: {e}", exc_info=True)
                self.store.fail_stage(stage["id"], str(e), _elapsed_ms(started))
                self.store.set_project_status(project_id, "failed")
                raise
            finally:
                self.full_context.invalidate(project_id)
                self.compact_context.invalidate(project_id)
        finally:
            lock.release()

    def _run_stage(self, project: dict, stage: dict, strategy, provider, ai_config: AIConfig, started: float) -> StageResult:
        project_id = project["id"]
        stage_number = stage["stage_number"]
        timings = {}
        stage_defaults = get_stage_defaults(self.config, stage_number)

        # 1. 提示词
        t = time.perf_counter()
        base_prompt = build_stage_prompt(
            project["content_type"], stage_number, project["topic"],
            audience=project.get("target_audience"), genre=project.get("genre"),
        )
        prompt = base_prompt if stage_number == 1 else strategy.build_prompt(project_id, stage_number, base_prompt)
        timings["context_ms"] = _elapsed_ms(t)

        # 2. 生成
        t = time.perf_counter()
        completion = provider.generate_completion(prompt, build_options(stage_defaults, ai_config))
        timings["generation_ms"] = _elapsed_ms(t)
        logger.info(f"项目 {project_id} 阶段 {stage_number} 生成耗时 {timings['generation_ms']} ms，"
                    f"提示词 {len(prompt)} 字符，tokens {completion.usage.total_tokens}")
        output = parse_json_output(completion.content)
        tokens_used = completion.usage.total_tokens

        # 3. 评审
        t = time.perf_counter()
        context = self.full_context.load_project_context(project_id)
        report = self.mentor.validate(output, stage_number, context, skip=ai_config.skip_validation, ai_provider=provider)
        timings["validation_ms"] = _elapsed_ms(t)

        # 4. 修正 (至多一次)
        final_output = output
        issues_fixed = 0
        timings["correction_ms"] = 0
        if report.validation_score < self.threshold and report.issues:
            t = time.perf_counter()
            logger.info(f"项目 {project_id} 阶段 {stage_number} 得分 {report.validation_score} 低于 {self.threshold}，发起修正")
            correction_prompt = self.mentor.build_correction_prompt(output, report, stage_number, context)
            correction = provider.generate_completion(correction_prompt, build_options(stage_defaults, ai_config, correction=True))
            tokens_used += correction.usage.total_tokens
            corrected = parse_json_output(correction.content)
            corrected_report = self.mentor.validate(corrected, stage_number, context, ai_provider=provider)
            corrected_report.corrections_applied = True

            improved = corrected_report.validation_score > report.validation_score
            issues_fixed = len(report.issues) if improved else 0
            self.store.save_correction(
                project_id, stage_number, output, corrected,
                issues_fixed=MentorValidator.issues_as_dicts(report) if improved else [],
                original_score=report.validation_score,
                final_score=corrected_report.validation_score,
            )
            logger.info(f"项目 {project_id} 阶段 {stage_number} 修正完成: {report.validation_score} -> {corrected_report.validation_score}")
            self.compact_context.track_evolution(project_id, stage_number, output, corrected, trigger="correction")
            final_output, report = corrected, corrected_report
            timings["correction_ms"] = _elapsed_ms(t)

        self.store.save_mentor_report(project_id, report)

        # 5. 落库类型化实体
        self._persist_entities(project_id, stage["id"], stage_number, final_output)

        # 6. 记号
        t = time.perf_counter()
        notations = self.compact_context.save_stage_notations(
            project_id, stage["id"], stage_number, final_output,
            ai_provider=provider if ai_config.ai_notation_parsing else None,
        )
        timings["notation_ms"] = _elapsed_ms(t)

        # 7. 完成阶段并推进项目
        timings["total_ms"] = _elapsed_ms(started)
        self.store.complete_stage(
            stage["id"], final_output, report.validation_score, timings["total_ms"],
            ai_provider=completion.provider, ai_model=completion.model,
            tokens_used=tokens_used, notations_count=len(notations),
        )
        self.store.advance_project(project_id, stage_number)
        logger.info(f"项目 {project_id} 阶段 {stage_number} 完成，得分 {report.validation_score}，"
                    f"记号 {len(notations)} 条，总耗时 {timings['total_ms']} ms")

        return StageResult(
            stage_id=stage["id"],
            project_id=project_id,
            stage_number=stage_number,
            stage_name=stage["stage_name"],
            output=final_output,
            validation_score=report.validation_score,
            issues_fixed=issues_fixed,
            mentor_insight=report.mentor_insight,
            continuity_check=report.to_dict()["continuity_check"],
            corrections_applied=report.corrections_applied,
            next_stage=stage_number + 1 if stage_number < TOTAL_STAGES else None,
            tokens_used=tokens_used,
            notations_count=len(notations),
            timings=timings,
        )

    # --- 按阶段落库 ---

    def _persist_entities(self, project_id: int, stage_id: int, stage_number: int, output):
        handler = {
            2: self._store_objects_and_timeline,
            3: self._store_structure,
            4: self._store_granular_units,
        }.get(stage_number)
        if handler is None:
            return
        handler(project_id, stage_id, parse_stage_output(stage_number, output))

    def _store_objects_and_timeline(self, project_id: int, stage_id: int, parsed):
        objects = self.store.save_objects(project_id, stage_id, parsed.objects)
        events = self.store.save_timeline(project_id, stage_id, parsed.timeline)
        logger.info(f"项目 {project_id}: 保存实体 {objects} 个，时间线事件 {events} 个")

    def _store_structure(self, project_id: int, stage_id: int, parsed):
        parsed.assign_missing_codes()
        units = self.store.save_structural_units(project_id, stage_id, parsed.structure)
        logger.info(f"项目 {project_id}: 保存结构单元 {units} 个")

    def _store_granular_units(self, project_id: int, stage_id: int, parsed):
        saved, skipped = self.store.save_granular_units(project_id, stage_id, parsed.granular_units)
        logger.info(f"项目 {project_id}: 保存细粒度单元 {saved} 个，跳过 {skipped} 个")
