"""
提示词模板管理系统
提供纹身线稿生成提示词和语言模型系统提示词的定义、拼接和管理功能
"""
import re
from typing import List, Optional, Dict
from dataclasses import dataclass
from enum import Enum


_PLACEHOLDER = re.compile(r"\{(\w+)\}")


class TemplateCategory(str, Enum):
    """模板分类"""
    STENCIL = "stencil"       # 线稿生成提示词片段
    SYSTEM = "system"         # 语言模型系统提示词
    REQUEST = "request"       # 发给语言模型的用户消息


@dataclass
class PromptTemplate:
    """提示词模板类"""

    template_id: str                      # 模板唯一标识
    name: str                             # 模板名称
    category: TemplateCategory            # 模板分类
    description: str                      # 模板描述
    prompt_template: str                  # 提示词模板（支持变量替换）
    priority: int = 0                     # 拼接顺序（数字越小越靠前）
    enabled: bool = True                  # 是否启用

    def render(self, **kwargs) -> str:
        """
        渲染模板

        单次替换，变量值中出现的占位符不会被再次展开

        Args:
            **kwargs: 变量替换键值对

        Returns:
            str: 渲染后的提示词
        """
        def _replace(match: re.Match) -> str:
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            return match.group(0)

        return _PLACEHOLDER.sub(_replace, self.prompt_template)


class PromptChain:
    """
    提示词链管理器
    管理多个模板的拼接和执行顺序
    """

    def __init__(self, name: str = "默认链", separator: str = ", "):
        self.name = name
        self.separator = separator
        self.templates: List[PromptTemplate] = []

    def add_template(self, template: PromptTemplate) -> None:
        """添加模板到链中，按优先级保持有序"""
        self.templates.append(template)
        self.templates.sort(key=lambda t: t.priority)

    def build_prompt(self, **global_kwargs) -> str:
        """
        构建完整提示词
        将所有启用的模板按顺序拼接

        Args:
            **global_kwargs: 全局变量（所有模板共享）

        Returns:
            str: 拼接后的完整提示词
        """
        parts = [
            template.render(**global_kwargs)
            for template in self.templates
            if template.enabled
        ]
        return self.separator.join(parts)


class PromptTemplateManager:
    """
    提示词模板管理器
    统一管理所有内置模板
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._templates: Dict[str, PromptTemplate] = {}
        self._chains: Dict[str, PromptChain] = {}
        self._load_builtin_templates()
        self._initialized = True

    def _load_builtin_templates(self) -> None:
        """加载内置模板"""
        # 线稿提示词片段，按优先级拼接
        self.register_template(PromptTemplate(
            template_id="stencil_subject",
            name="线稿主体",
            category=TemplateCategory.STENCIL,
            description="用户描述的主体内容",
            prompt_template="Professional tattoo stencil design, {prompt}",
            priority=1,
        ))
        self.register_template(PromptTemplate(
            template_id="stencil_lines",
            name="黑白线条",
            category=TemplateCategory.STENCIL,
            description="黑白线稿、粗而干净的线条",
            prompt_template="black and white line art, bold clean lines",
            priority=2,
        ))
        self.register_template(PromptTemplate(
            template_id="stencil_style",
            name="纹身风格",
            category=TemplateCategory.STENCIL,
            description="指定的纹身风格",
            prompt_template="{style} tattoo style",
            priority=3,
        ))
        self.register_template(PromptTemplate(
            template_id="stencil_line_weight",
            name="线条粗细",
            category=TemplateCategory.STENCIL,
            description="指定的线条粗细",
            prompt_template="{line_weight} line weight",
            priority=4,
        ))
        self.register_template(PromptTemplate(
            template_id="stencil_finish",
            name="成品要求",
            category=TemplateCategory.STENCIL,
            description="高对比度、适合纹身转印",
            prompt_template=(
                "high contrast, suitable for tattooing, detailed line work, "
                "professional tattoo flash art style"
            ),
            priority=5,
        ))

        stencil_chain = PromptChain(name="纹身线稿链", separator=", ")
        for template in self.list_templates(TemplateCategory.STENCIL):
            stencil_chain.add_template(template)
        self.register_chain("stencil", stencil_chain)

        # 语言模型系统提示词
        self.register_template(PromptTemplate(
            template_id="system_chat",
            name="对话助手",
            category=TemplateCategory.SYSTEM,
            description="纹身设计对话助手",
            prompt_template="""You are a professional tattoo artist and AI assistant for TattooStencilPro.
Help users create and refine tattoo stencil designs. Provide specific, actionable advice on:
- Tattoo composition and design elements
- Line work and style recommendations
- Size and placement suggestions
- Technical considerations for tattooing
- Style adaptations (traditional, neo-traditional, realistic, etc.)

Be encouraging and professional. Focus on creating designs that will translate well to tattoo stencils.""",
        ))
        self.register_template(PromptTemplate(
            template_id="system_analysis",
            name="图片分析",
            category=TemplateCategory.SYSTEM,
            description="参考图分析",
            prompt_template="""You are a professional tattoo artist and AI assistant specializing in tattoo stencil design.
Analyze images and help users refine their tattoo concepts with expert advice on composition, style, placement, and artistic elements.
Always provide specific, actionable suggestions for improving tattoo designs.""",
        ))
        self.register_template(PromptTemplate(
            template_id="system_enhance",
            name="提示词优化",
            category=TemplateCategory.SYSTEM,
            description="将用户描述改写为生成提示词",
            prompt_template="""You are an expert at creating detailed prompts for AI image generation specifically for tattoo stencils.
Create a detailed, technical prompt that will generate high-quality tattoo stencil designs.

Focus on:
- Clean, bold line work suitable for tattooing
- Professional tattoo art style
- Black and white stencil format
- Proper composition and flow
- Technical details that ensure the design works as a tattoo

Return only the refined prompt without explanations.""",
        ))

        # 用户消息模板
        self.register_template(PromptTemplate(
            template_id="analysis_request",
            name="带问题的分析请求",
            category=TemplateCategory.REQUEST,
            description="用户附带了具体问题",
            prompt_template="Please analyze this tattoo design and help me with: {prompt}",
        ))
        self.register_template(PromptTemplate(
            template_id="analysis_default",
            name="默认分析请求",
            category=TemplateCategory.REQUEST,
            description="用户未附带问题",
            prompt_template=(
                "Please analyze this tattoo design and provide professional suggestions for creating "
                "a tattoo stencil. Consider composition, line work, style, and any improvements that "
                "would make this a better tattoo."
            ),
        ))
        self.register_template(PromptTemplate(
            template_id="enhance_request",
            name="优化请求",
            category=TemplateCategory.REQUEST,
            description="提示词优化的用户消息",
            prompt_template="User request: {prompt}",
        ))

    def register_template(self, template: PromptTemplate) -> None:
        self._templates[template.template_id] = template

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def list_templates(self, category: Optional[TemplateCategory] = None) -> List[PromptTemplate]:
        """
        列出所有模板

        Args:
            category: 分类筛选

        Returns:
            List[PromptTemplate]: 按优先级排序的模板列表
        """
        templates = list(self._templates.values())
        if category:
            templates = [t for t in templates if t.category == category]
        return sorted(templates, key=lambda t: t.priority)

    def register_chain(self, chain_id: str, chain: PromptChain) -> None:
        self._chains[chain_id] = chain

    def render(self, template_id: str, **kwargs) -> str:
        """渲染单个模板，模板不存在时抛出 KeyError"""
        template = self.get_template(template_id)
        if template is None:
            raise KeyError(f"Unknown prompt template: {template_id}")
        return template.render(**kwargs)

    def build_stencil_prompt(self, prompt: str, style: str, line_weight: str) -> str:
        """
        拼接线稿生成提示词

        Args:
            prompt: 用户（或优化后的）描述
            style: 纹身风格
            line_weight: 线条粗细

        Returns:
            str: 最终发送给图片生成模型的提示词
        """
        return self._chains["stencil"].build_prompt(
            prompt=prompt.strip(),
            style=style,
            line_weight=line_weight,
        )


# 全局模板管理器实例
prompt_manager = PromptTemplateManager()


def get_prompt_manager() -> PromptTemplateManager:
    """获取全局提示词管理器"""
    return prompt_manager
