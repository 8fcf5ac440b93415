# Copyright 2025 LLM Inference Service Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Prompt templates per model family.

Templates never emit the beginning-of-sequence token; the tokenizer adds it.
Control markers of the template's own family are removed from user-supplied
text, so a prompt cannot close its turn and open a new one.
"""
import re
from typing import Optional

TEMPLATES = ('llama3', 'mistral', 'phi', 'raw')

LLAMA3_MARKERS = re.compile(r'<\|(?:begin_of_text|end_of_text|start_header_id|end_header_id|eot_id|eom_id)\|>')
MISTRAL_MARKERS = re.compile(r'</?s>|\[/?INST\]')


def _llama3(prompt: str, system_prompt: str) -> str:
    prompt = LLAMA3_MARKERS.sub('', prompt)
    system_block = ''
    if system_prompt:
        system_prompt = LLAMA3_MARKERS.sub('', system_prompt)
        system_block = f"<|start_header_id|>system<|end_header_id|>\n\n{system_prompt}<|eot_id|>"
    return (system_block +
            f"<|start_header_id|>user<|end_header_id|>\n\n{prompt}<|eot_id|>"
            f"<|start_header_id|>assistant<|end_header_id|>\n\n")


def _mistral(prompt: str, system_prompt: str) -> str:
    prompt = MISTRAL_MARKERS.sub('', prompt)
    if system_prompt:
        prompt = f"System: {MISTRAL_MARKERS.sub('', system_prompt)}\n\nUser: {prompt}"
    return f"[INST] {prompt} [/INST]"


def _phi(prompt: str, system_prompt: str) -> str:
    if system_prompt:
        prompt = f"{system_prompt} {prompt}"
    return f"Instruct: {prompt}\nOutput:"


def apply_chat_template(template: str, prompt: str, system_prompt: Optional[str] = None) -> str:
    """Wrap a user prompt in the format the model was tuned on.

    Unknown templates and `raw` pass the prompt through unchanged; the system
    prompt is dropped in that case because there is no slot for it.
    """
    system_prompt = system_prompt or ''
    if template == 'llama3':
        return _llama3(prompt, system_prompt)
    if template == 'mistral':
        return _mistral(prompt, system_prompt)
    if template == 'phi':
        return _phi(prompt, system_prompt)
    return prompt
