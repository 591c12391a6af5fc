"""
自定义异常类
用于在应用的不同层之间传递具有明确语义的错误信息。
"""

class ProgressiveEngineError(Exception):
    """引擎内所有业务异常的基类"""
    pass

class PreconditionError(ProgressiveEngineError):
    """阶段执行前置条件不满足。在任何 AI 调用和写入之前抛出。"""
    pass

class ProjectNotFoundError(PreconditionError):
    """项目不存在"""
    def __init__(self, project_id):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id

class InvalidStageError(PreconditionError):
    """阶段号不在 1-4 范围内"""
    def __init__(self, stage_number):
        super().__init__(f"Invalid stage number: {stage_number}. Must be 1-4")
        self.stage_number = stage_number

class StageIncompleteError(PreconditionError):
    """上一阶段尚未完成"""
    def __init__(self, required_stage: int):
        super().__init__(f"Stage {required_stage} must be completed first")
        self.required_stage = required_stage

class StageAlreadyCompletedError(PreconditionError):
    """已完成的阶段不可重复执行"""
    def __init__(self, stage_number: int):
        super().__init__(f"Stage {stage_number} is already completed")
        self.stage_number = stage_number

class StageInProgressError(PreconditionError):
    """同一项目的同一阶段正在被另一个请求执行"""
    def __init__(self, project_id, stage_number: int):
        super().__init__(f"Stage {stage_number} of project {project_id} is already in progress")
        self.project_id = project_id
        self.stage_number = stage_number

class AIInvocationError(ProgressiveEngineError):
    """当与大语言模型交互时发生错误 (网络、超时、提供商故障)"""
    pass

class PersistenceError(ProgressiveEngineError):
    """当数据库写入失败时发生错误"""
    pass

class OutputValidationError(ProgressiveEngineError):
    """阶段输出不符合该阶段的类型化结构"""
    pass

class NotationError(ProgressiveEngineError):
    """UAOL 记号无法编码或解析"""
    pass

class ConfigurationError(ProgressiveEngineError):
    """当应用配置不正确或缺失时发生错误"""
    pass

class ProjectValidationError(PreconditionError):
    """创建项目的请求数据不合法"""
    pass
