"""
SignatureInstruction: the structured result of strategy composition.

An instruction is made of sentence fragments (verb, dose, route, frequency and trailing
clauses) plus the structured dose/timing data used for the interchange record. Modifiers
never mutate an instruction; they return a copy via `dataclasses.replace`.

The sentence can be produced two ways and both must agree:
- `text` joins the fragments directly;
- `template_params()` feeds the same fragments to the instruction's template.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping

from .medication import Quantity


@dataclass(frozen=True)
class SignatureInstruction:
    verb: str
    dose_text: str
    route_text: str
    frequency_text: str
    template_key: str = "DEFAULT_TEMPLATE"
    # appended directly after dose_text, e.g. " (2.5 mg)" or ", as 1 mL"
    dose_suffix: str | None = None
    special_instructions: str | None = None
    # PRN indication; "" means as-needed without a stated reason
    as_needed: str | None = None
    cautions: tuple[str, ...] = ()
    trailing: tuple[str, ...] = ()
    # full sentences after the main one, e.g. "Rotate injection sites."
    sentences: tuple[str, ...] = ()
    template_data: Mapping[str, Any] = field(default_factory=dict)
    dose_quantity: Quantity | None = None
    secondary_doses: tuple[Quantity, ...] = ()
    timing: Mapping[str, Any] | None = None
    route: str | None = None
    additional_instructions: tuple[str, ...] = ()

    def replace(self, **changes) -> "SignatureInstruction":
        return dataclasses.replace(self, **changes)

    @property
    def full_dose_text(self) -> str:
        return self.dose_text + (self.dose_suffix or "")

    @property
    def text(self) -> str:
        head = " ".join(
            part for part in (self.verb, self.full_dose_text, self.route_text, self.frequency_text) if part
        )
        if self.as_needed is not None:
            head += " as needed"
            if self.as_needed:
                head += f" for {self.as_needed}"
        for clause in (self.special_instructions, *self.cautions, *self.trailing):
            if clause:
                head += f" {clause}"
        return " ".join([head + ".", *self.sentences])

    def template_params(self) -> dict[str, Any]:
        """
        Flat parameter record for `template_key`. Absent optional fields are left out
        entirely so the template's `undefined` branches apply.
        """
        params = dict(self.template_data)
        params.update(
            verb=self.verb,
            dose_text=self.dose_text,
            dose_suffix=self.dose_suffix or None,
            route=self.route_text,
            frequency=self.frequency_text,
            special_instructions=self.special_instructions or None,
            prn="yes" if self.as_needed is not None else None,
            indication=self.as_needed or None,
            caution=" ".join(self.cautions) or None,
            trailing=" ".join(self.trailing) or None,
            sentences=" ".join(self.sentences) or None,
        )
        return {key: value for key, value in params.items() if value is not None}

    def with_additional_instruction(self, text: str) -> "SignatureInstruction":
        if text in self.additional_instructions:
            return self
        return self.replace(additional_instructions=(*self.additional_instructions, text))
