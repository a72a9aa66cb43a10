"""Field type system and field definition model for dynamic apps."""

from __future__ import annotations

import copy
import graphlib
import re
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List

from formula_eval import FORMULA_FORMATS, FormulaEvalError, formula_references


Issue = Dict[str, Any]


class FieldType(str, Enum):
    SINGLE_LINE_TEXT = "single_line_text"
    MULTI_LINE_TEXT = "multi_line_text"
    NUMBER = "number"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"
    LINK = "link"
    DROPDOWN = "dropdown"
    RADIO_BUTTON = "radio_button"
    CHECKBOX = "checkbox"
    MULTI_SELECT = "multi_select"
    RECORD_NUMBER = "record_number"
    CREATOR = "creator"
    CREATED_TIME = "created_time"
    MODIFIER = "modifier"
    MODIFIED_TIME = "modified_time"
    LABEL = "label"
    SPACE = "space"
    HR = "hr"
    LOOKUP = "lookup"
    RELATED_RECORDS = "related_records"
    CALCULATED = "calculated"
    USER_SELECT = "user_select"
    ORG_SELECT = "org_select"
    GROUP_SELECT = "group_select"
    SUBTABLE = "subtable"
    FILE_UPLOAD = "file_upload"
    RICH_EDITOR = "rich_editor"


class FieldCategory(str, Enum):
    INPUT = "input"
    AUTO = "auto"
    DECORATIVE = "decorative"
    REFERENCE = "reference"
    ENTITY_SELECT = "entity_select"
    STRUCTURAL = "structural"


FIELD_CATEGORIES: Dict[FieldType, FieldCategory] = {
    FieldType.SINGLE_LINE_TEXT: FieldCategory.INPUT,
    FieldType.MULTI_LINE_TEXT: FieldCategory.INPUT,
    FieldType.NUMBER: FieldCategory.INPUT,
    FieldType.DATE: FieldCategory.INPUT,
    FieldType.TIME: FieldCategory.INPUT,
    FieldType.DATETIME: FieldCategory.INPUT,
    FieldType.LINK: FieldCategory.INPUT,
    FieldType.DROPDOWN: FieldCategory.INPUT,
    FieldType.RADIO_BUTTON: FieldCategory.INPUT,
    FieldType.CHECKBOX: FieldCategory.INPUT,
    FieldType.MULTI_SELECT: FieldCategory.INPUT,
    FieldType.RECORD_NUMBER: FieldCategory.AUTO,
    FieldType.CREATOR: FieldCategory.AUTO,
    FieldType.CREATED_TIME: FieldCategory.AUTO,
    FieldType.MODIFIER: FieldCategory.AUTO,
    FieldType.MODIFIED_TIME: FieldCategory.AUTO,
    FieldType.LABEL: FieldCategory.DECORATIVE,
    FieldType.SPACE: FieldCategory.DECORATIVE,
    FieldType.HR: FieldCategory.DECORATIVE,
    FieldType.LOOKUP: FieldCategory.REFERENCE,
    FieldType.RELATED_RECORDS: FieldCategory.REFERENCE,
    FieldType.CALCULATED: FieldCategory.REFERENCE,
    FieldType.USER_SELECT: FieldCategory.ENTITY_SELECT,
    FieldType.ORG_SELECT: FieldCategory.ENTITY_SELECT,
    FieldType.GROUP_SELECT: FieldCategory.ENTITY_SELECT,
    FieldType.SUBTABLE: FieldCategory.STRUCTURAL,
    FieldType.FILE_UPLOAD: FieldCategory.STRUCTURAL,
    FieldType.RICH_EDITOR: FieldCategory.STRUCTURAL,
}

if set(FIELD_CATEGORIES) != set(FieldType):  # pragma: no cover - import-time guard
    raise RuntimeError("FIELD_CATEGORIES must cover every FieldType")

# Record metadata key backing each auto field.
AUTO_FIELD_SOURCES: Dict[FieldType, str] = {
    FieldType.RECORD_NUMBER: "record_number",
    FieldType.CREATOR: "created_by",
    FieldType.CREATED_TIME: "created_at",
    FieldType.MODIFIER: "updated_by",
    FieldType.MODIFIED_TIME: "updated_at",
}

RECORD_METADATA_KEYS = {"id", "record_number", "created_by", "created_at", "updated_by", "updated_at", "status"}

TEXT_TYPES = {FieldType.SINGLE_LINE_TEXT, FieldType.MULTI_LINE_TEXT}
CHOICE_TYPES = {FieldType.DROPDOWN, FieldType.RADIO_BUTTON, FieldType.CHECKBOX, FieldType.MULTI_SELECT}
MULTI_CHOICE_TYPES = {FieldType.CHECKBOX, FieldType.MULTI_SELECT}
NUMERIC_TYPES = {FieldType.NUMBER, FieldType.CALCULATED}
LINK_TYPES = {"url", "tel", "email"}
MAX_FILE_SIZE_MB = 50
MAX_FILES = 20

SUBTABLE_ALLOWED_TYPES = {
    FieldType.SINGLE_LINE_TEXT,
    FieldType.MULTI_LINE_TEXT,
    FieldType.NUMBER,
    FieldType.DATE,
    FieldType.TIME,
    FieldType.DATETIME,
    FieldType.DROPDOWN,
    FieldType.CHECKBOX,
    FieldType.RADIO_BUTTON,
    FieldType.MULTI_SELECT,
    FieldType.LINK,
    FieldType.LOOKUP,
    FieldType.CALCULATED,
    FieldType.USER_SELECT,
    FieldType.ORG_SELECT,
    FieldType.GROUP_SELECT,
}

HIDDEN_IN_LIST_TYPES = {FieldType.FILE_UPLOAD, FieldType.RICH_EDITOR, FieldType.RELATED_RECORDS, FieldType.SUBTABLE}

_FIELD_CODE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TEMP_ID_PREFIX = "temp_"


@dataclass
class FieldSchemaError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _int_setting(value: Any, default: int) -> int | None:
    """Integer form of a numeric config value; None when it has none."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _layout_int(data: dict, key: str, default: int) -> int:
    number = _int_setting(data.get(key), default)
    if number is None:
        raise FieldSchemaError("FIELD_LAYOUT_INVALID", f"{key} must be an integer", key)
    return number


def field_type_of(value: Any) -> FieldType:
    if isinstance(value, FieldType):
        return value
    try:
        return FieldType(value)
    except ValueError as exc:
        raise FieldSchemaError("FIELD_TYPE_UNKNOWN", f"Unknown field type: {value!r}", "field_type") from exc


def category_of(field_type: Any) -> FieldCategory:
    return FIELD_CATEGORIES[field_type_of(field_type)]


def is_auto(field_type: Any) -> bool:
    return category_of(field_type) is FieldCategory.AUTO


def is_decorative(field_type: Any) -> bool:
    return category_of(field_type) is FieldCategory.DECORATIVE


def is_reference(field_type: Any) -> bool:
    return category_of(field_type) is FieldCategory.REFERENCE


def is_entity_select(field_type: Any) -> bool:
    return category_of(field_type) is FieldCategory.ENTITY_SELECT


def is_numeric(field_type: Any) -> bool:
    return field_type_of(field_type) in NUMERIC_TYPES


def accepts_input(field_type: Any) -> bool:
    """False for types whose value is never typed in by a user."""
    ftype = field_type_of(field_type)
    if ftype in (FieldType.RELATED_RECORDS, FieldType.CALCULATED):
        return False
    return category_of(ftype) not in (FieldCategory.AUTO, FieldCategory.DECORATIVE)


def stores_value(field_type: Any) -> bool:
    ftype = field_type_of(field_type)
    return not is_decorative(ftype) and ftype is not FieldType.RELATED_RECORDS


@dataclass
class FieldOption:
    value: str
    label: Dict[str, str] = field(default_factory=dict)


@dataclass
class LookupCopyField:
    source_field: str
    target_field: str


@dataclass
class LookupConfig:
    lookup_app_code: str
    lookup_key_field: str
    lookup_copy_fields: List[LookupCopyField] = field(default_factory=list)


@dataclass
class RelatedRecordsConfig:
    related_app_code: str
    related_key_field: str
    related_this_field: str
    related_display_fields: List[str] = field(default_factory=list)


@dataclass
class FormulaConfig:
    formula: str
    formula_format: str = "number"
    formula_decimals: int = 2


@dataclass
class SubtableConfig:
    min_rows: int | None = None
    max_rows: int | None = None
    allow_add: bool = True
    allow_delete: bool = True


@dataclass
class FieldDefinition:
    field_code: str
    field_type: FieldType
    id: str | None = None
    label: Dict[str, str] = field(default_factory=dict)
    description: Dict[str, str] = field(default_factory=dict)
    required: bool = False
    unique_field: bool = False
    default_value: Any = None
    options: List[FieldOption] | None = None
    validation: Dict[str, Any] = field(default_factory=dict)
    display_order: int = 0
    row_index: int = 0
    col_index: int = 0
    col_span: int = 1
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "FieldDefinition":
        if not isinstance(data, dict):
            raise FieldSchemaError("FIELD_INVALID", "field definition must be an object", "$")
        code = data.get("field_code")
        if not isinstance(code, str) or not code:
            raise FieldSchemaError("FIELD_CODE_INVALID", "field_code must be non-empty string", "field_code")
        options = data.get("options")
        parsed_options = None
        if isinstance(options, list):
            parsed_options = []
            for opt in options:
                if isinstance(opt, dict):
                    label = opt.get("label")
                    parsed_options.append(
                        FieldOption(str(opt.get("value", "")), label if isinstance(label, dict) else {"en": str(label or "")})
                    )
                else:
                    parsed_options.append(FieldOption(str(opt), {}))
        return cls(
            field_code=code,
            field_type=field_type_of(data.get("field_type")),
            id=data.get("id"),
            label=dict(data.get("label") or {}),
            description=dict(data.get("description") or {}),
            required=bool(data.get("required", False)),
            unique_field=bool(data.get("unique_field", False)),
            default_value=copy.deepcopy(data.get("default_value")),
            options=parsed_options,
            validation=copy.deepcopy(data.get("validation") or {}),
            display_order=_layout_int(data, "display_order", 0),
            row_index=_layout_int(data, "row_index", 0),
            col_index=_layout_int(data, "col_index", 0),
            col_span=_layout_int(data, "col_span", 1),
            is_active=bool(data.get("is_active", True)),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["field_type"] = self.field_type.value
        return data

    @property
    def is_temporary(self) -> bool:
        return not self.id or str(self.id).startswith(TEMP_ID_PREFIX)

    @property
    def category(self) -> FieldCategory:
        return FIELD_CATEGORIES[self.field_type]

    def option_values(self) -> List[str]:
        return [opt.value for opt in self.options or []]

    def lookup_config(self) -> LookupConfig | None:
        v = self.validation
        if not v.get("lookup_app_code") or not v.get("lookup_key_field"):
            return None
        copies = [
            LookupCopyField(str(c.get("source_field")), str(c.get("target_field")))
            for c in v.get("lookup_copy_fields") or []
            if isinstance(c, dict) and c.get("source_field") and c.get("target_field")
        ]
        return LookupConfig(v["lookup_app_code"], v["lookup_key_field"], copies)

    def related_config(self) -> RelatedRecordsConfig | None:
        v = self.validation
        keys = ("related_app_code", "related_key_field", "related_this_field")
        if not all(v.get(k) for k in keys):
            return None
        display = [d for d in v.get("related_display_fields") or [] if isinstance(d, str)]
        return RelatedRecordsConfig(v["related_app_code"], v["related_key_field"], v["related_this_field"], display)

    def formula_config(self) -> FormulaConfig | None:
        v = self.validation
        if not isinstance(v.get("formula"), str) or not v["formula"].strip():
            return None
        decimals = _int_setting(v.get("formula_decimals"), 2)
        return FormulaConfig(
            v["formula"],
            v.get("formula_format") or "number",
            2 if decimals is None else decimals,
        )

    def subtable_config(self) -> SubtableConfig:
        cfg = self.validation.get("subtable_config") or {}
        return SubtableConfig(
            cfg.get("min_rows"),
            cfg.get("max_rows"),
            bool(cfg.get("allow_add", True)),
            bool(cfg.get("allow_delete", True)),
        )

    def subtable_fields(self) -> List["FieldDefinition"]:
        return [FieldDefinition.from_dict(sf) for sf in self.validation.get("subtable_fields") or [] if isinstance(sf, dict)]

    def allow_multiple(self) -> bool:
        return self.validation.get("allow_multiple") is True


def coerce_definition(value: Any) -> FieldDefinition:
    if isinstance(value, FieldDefinition):
        return value
    return FieldDefinition.from_dict(value)


def default_value_for(definition: Any) -> Any:
    """Initial value for a new record; None for types that are never entered."""
    defn = coerce_definition(definition)
    ftype = defn.field_type
    if not accepts_input(ftype):
        return None
    default = copy.deepcopy(defn.default_value)
    if ftype in MULTI_CHOICE_TYPES:
        if default is None or default == "":
            return []
        return list(default) if isinstance(default, (list, tuple)) else [default]
    if ftype is FieldType.SUBTABLE:
        return []
    if ftype is FieldType.FILE_UPLOAD:
        return []
    if is_entity_select(ftype):
        if defn.allow_multiple():
            if default in (None, ""):
                return []
            return list(default) if isinstance(default, (list, tuple)) else [default]
        if isinstance(default, (list, tuple)):
            return default[0] if default else None
        return default if default != "" else None
    if ftype is FieldType.NUMBER:
        if default in (None, ""):
            return None
        try:
            number = float(default)
        except (TypeError, ValueError):
            return None
        return int(number) if number.is_integer() else number
    if default == "":
        return None
    return default


def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_field_definition(definition: Any, path: str = "$") -> List[Issue]:
    """Type-specific validation contract for one definition."""
    errors: List[Issue] = []
    try:
        defn = coerce_definition(definition)
    except FieldSchemaError as exc:
        return [_issue(exc.code, exc.message, f"{path}.{exc.path}" if exc.path else path)]

    v = defn.validation if isinstance(defn.validation, dict) else {}
    ftype = defn.field_type
    vpath = f"{path}.validation"

    if not _FIELD_CODE_RE.match(defn.field_code):
        errors.append(_issue("FIELD_CODE_INVALID", "field_code must be an identifier", f"{path}.field_code"))

    if ftype is FieldType.NUMBER:
        lo, hi = v.get("min"), v.get("max")
        for key, val in (("min", lo), ("max", hi)):
            if val is not None and (not isinstance(val, (int, float)) or isinstance(val, bool)):
                errors.append(_issue("FIELD_VALIDATION_INVALID", f"{key} must be a number", f"{vpath}.{key}"))
        if isinstance(lo, (int, float)) and isinstance(hi, (int, float)) and lo > hi:
            errors.append(_issue("FIELD_VALIDATION_INVALID", "min must not exceed max", vpath))
    elif ftype in TEXT_TYPES:
        if v.get("max") is not None and (not _non_negative_int(v.get("max")) or v.get("max") == 0):
            errors.append(_issue("FIELD_VALIDATION_INVALID", "max must be a positive integer", f"{vpath}.max"))
    elif ftype is FieldType.LINK:
        if v.get("link_type") not in LINK_TYPES:
            errors.append(_issue("FIELD_VALIDATION_INVALID", "link_type must be url, tel or email", f"{vpath}.link_type"))
    elif ftype is FieldType.FILE_UPLOAD:
        size = v.get("max_file_size")
        if not isinstance(size, (int, float)) or isinstance(size, bool) or size <= 0 or size > MAX_FILE_SIZE_MB:
            errors.append(_issue("FIELD_VALIDATION_INVALID", f"max_file_size must be in (0, {MAX_FILE_SIZE_MB}] MB", f"{vpath}.max_file_size"))
        count = v.get("max_files")
        if not _non_negative_int(count) or count < 1 or count > MAX_FILES:
            errors.append(_issue("FIELD_VALIDATION_INVALID", f"max_files must be in [1, {MAX_FILES}]", f"{vpath}.max_files"))
    elif is_entity_select(ftype):
        if not isinstance(v.get("allow_multiple"), bool):
            errors.append(_issue("FIELD_VALIDATION_INVALID", "allow_multiple must be boolean", f"{vpath}.allow_multiple"))
    elif ftype is FieldType.LOOKUP:
        if defn.lookup_config() is None:
            errors.append(_issue("LOOKUP_CONFIG_INVALID", "lookup_app_code and lookup_key_field are required", vpath))
    elif ftype is FieldType.RELATED_RECORDS:
        if defn.related_config() is None:
            errors.append(
                _issue(
                    "RELATED_CONFIG_INVALID",
                    "related_app_code, related_key_field and related_this_field are required",
                    vpath,
                )
            )
    elif ftype is FieldType.CALCULATED:
        cfg = defn.formula_config()
        if cfg is None:
            errors.append(_issue("FORMULA_MISSING", "formula is required", f"{vpath}.formula"))
        else:
            try:
                formula_references(cfg.formula)
            except FormulaEvalError as exc:
                errors.append(_issue(exc.code, exc.message, f"{vpath}.formula", {"position": exc.path}))
            if cfg.formula_format not in FORMULA_FORMATS:
                errors.append(_issue("FIELD_VALIDATION_INVALID", "formula_format must be number, currency or percent", f"{vpath}.formula_format"))
            if _int_setting(v.get("formula_decimals"), 2) is None:
                errors.append(_issue("FIELD_VALIDATION_INVALID", "formula_decimals must be an integer", f"{vpath}.formula_decimals"))
            elif not 0 <= cfg.formula_decimals <= 10:
                errors.append(_issue("FIELD_VALIDATION_INVALID", "formula_decimals must be in [0, 10]", f"{vpath}.formula_decimals"))
    elif ftype is FieldType.SUBTABLE:
        cfg = v.get("subtable_config") or {}
        lo, hi = cfg.get("min_rows"), cfg.get("max_rows")
        for key, val in (("min_rows", lo), ("max_rows", hi)):
            if val is not None and not _non_negative_int(val):
                errors.append(_issue("FIELD_VALIDATION_INVALID", f"{key} must be a non-negative integer", f"{vpath}.subtable_config.{key}"))
        if _non_negative_int(lo) and _non_negative_int(hi) and lo > hi:
            errors.append(_issue("FIELD_VALIDATION_INVALID", "min_rows must not exceed max_rows", f"{vpath}.subtable_config"))
        sub_codes: List[str] = []
        for idx, raw in enumerate(v.get("subtable_fields") or []):
            spath = f"{vpath}.subtable_fields[{idx}]"
            try:
                sub = coerce_definition(raw)
            except FieldSchemaError as exc:
                errors.append(_issue(exc.code, exc.message, spath))
                continue
            if sub.field_type not in SUBTABLE_ALLOWED_TYPES:
                errors.append(_issue("SUBTABLE_FIELD_TYPE_INVALID", f"{sub.field_type.value} is not allowed in a subtable", spath))
            if sub.field_code in sub_codes:
                errors.append(_issue("FIELD_CODE_DUPLICATE", f"Duplicate sub-field code: {sub.field_code}", spath))
            sub_codes.append(sub.field_code)
            errors.extend(validate_field_definition(sub, spath))

    if ftype in CHOICE_TYPES:
        values = defn.option_values()
        if not values:
            errors.append(_issue("FIELD_OPTIONS_MISSING", "choice fields need at least one option", f"{path}.options"))
        elif len(set(values)) != len(values):
            errors.append(_issue("FIELD_OPTIONS_DUPLICATE", "option values must be unique", f"{path}.options"))

    return errors


def calculated_dependencies(fields: Iterable[FieldDefinition]) -> Dict[str, List[str]]:
    deps: Dict[str, List[str]] = {}
    for defn in fields:
        if defn.field_type is not FieldType.CALCULATED or not defn.is_active:
            continue
        cfg = defn.formula_config()
        if cfg is None:
            continue
        try:
            deps[defn.field_code] = formula_references(cfg.formula)
        except FormulaEvalError:
            deps[defn.field_code] = []
    return deps


def calculation_order(fields: Iterable[FieldDefinition]) -> List[str]:
    """Calculated field codes ordered so dependencies come first.

    Raises graphlib.CycleError when calculated fields reference each other in
    a loop.
    """
    deps = calculated_dependencies(fields)
    sorter = graphlib.TopologicalSorter({code: [d for d in refs if d in deps] for code, refs in deps.items()})
    return list(sorter.static_order())


def validate_app_schema(fields: Iterable[Any]) -> List[Issue]:
    """Cross-field checks run before persisting an app's field list."""
    errors: List[Issue] = []
    defs: List[FieldDefinition] = []
    for idx, raw in enumerate(fields):
        try:
            defs.append(coerce_definition(raw))
        except FieldSchemaError as exc:
            errors.append(_issue(exc.code, exc.message, f"$.fields[{idx}]"))

    active = [d for d in defs if d.is_active]
    by_code: Dict[str, FieldDefinition] = {}
    seen_auto: Dict[FieldType, str] = {}
    for idx, defn in enumerate(defs):
        path = f"$.fields[{idx}]"
        errors.extend(validate_field_definition(defn, path))
        if not defn.is_active:
            continue
        if defn.field_code in by_code:
            errors.append(_issue("FIELD_CODE_DUPLICATE", f"Duplicate field_code: {defn.field_code}", f"{path}.field_code"))
        by_code[defn.field_code] = defn
        if defn.field_code in RECORD_METADATA_KEYS:
            errors.append(_issue("FIELD_CODE_RESERVED", f"{defn.field_code} is reserved", f"{path}.field_code"))
        if is_auto(defn.field_type):
            if defn.field_type in seen_auto:
                errors.append(
                    _issue(
                        "FIELD_AUTO_DUPLICATE",
                        f"Only one {defn.field_type.value} field is allowed per app",
                        path,
                        {"existing": seen_auto[defn.field_type]},
                    )
                )
            else:
                seen_auto[defn.field_type] = defn.field_code

    for idx, defn in enumerate(defs):
        if not defn.is_active:
            continue
        path = f"$.fields[{idx}]"
        if defn.field_type is FieldType.CALCULATED and defn.formula_config() is not None:
            try:
                refs = formula_references(defn.formula_config().formula)
            except FormulaEvalError:
                refs = []
            for ref in refs:
                target = by_code.get(ref)
                if target is None:
                    errors.append(_issue("FORMULA_FIELD_UNKNOWN", f"Formula references unknown field: {ref}", f"{path}.validation.formula", {"field": ref}))
                elif not is_numeric(target.field_type):
                    errors.append(_issue("FORMULA_FIELD_NOT_NUMERIC", f"Formula references non-numeric field: {ref}", f"{path}.validation.formula", {"field": ref}))
        if defn.field_type is FieldType.LOOKUP:
            cfg = defn.lookup_config()
            for copy_field in cfg.lookup_copy_fields if cfg else []:
                if copy_field.target_field not in by_code:
                    errors.append(
                        _issue(
                            "LOOKUP_TARGET_FIELD_UNKNOWN",
                            f"Lookup copies into unknown field: {copy_field.target_field}",
                            f"{path}.validation.lookup_copy_fields",
                        )
                    )
        if defn.field_type is FieldType.RELATED_RECORDS:
            cfg = defn.related_config()
            if cfg and cfg.related_this_field not in by_code and cfg.related_this_field not in RECORD_METADATA_KEYS:
                errors.append(
                    _issue(
                        "RELATED_THIS_FIELD_UNKNOWN",
                        f"Unknown related_this_field: {cfg.related_this_field}",
                        f"{path}.validation.related_this_field",
                    )
                )

    try:
        calculation_order(active)
    except graphlib.CycleError as exc:
        cycle = [c for c in exc.args[1]] if len(exc.args) > 1 else []
        errors.append(_issue("FORMULA_CYCLE", "Calculated fields reference each other in a cycle", "$.fields", {"cycle": cycle}))
    return errors


def apply_field_update(existing: FieldDefinition, changes: dict) -> FieldDefinition:
    """Return an updated copy; field_code is frozen once persisted."""
    if not isinstance(changes, dict):
        raise FieldSchemaError("FIELD_INVALID", "changes must be an object", "$")
    new_code = changes.get("field_code", existing.field_code)
    if new_code != existing.field_code and not existing.is_temporary:
        raise FieldSchemaError(
            "FIELD_CODE_IMMUTABLE",
            f"field_code of persisted field {existing.field_code} cannot change",
            "field_code",
        )
    new_type = changes.get("field_type", existing.field_type)
    if field_type_of(new_type) is not existing.field_type and not existing.is_temporary:
        raise FieldSchemaError("FIELD_TYPE_IMMUTABLE", "field_type of a persisted field cannot change", "field_type")
    merged = existing.to_dict()
    merged.update(copy.deepcopy(changes))
    updated = FieldDefinition.from_dict(merged)
    return replace(updated, id=existing.id if "id" not in changes else changes["id"])


def find_field_references(field_code: str, fields: Iterable[FieldDefinition]) -> List[Issue]:
    """Schema-internal references to a field (formulas, lookups, related records)."""
    refs: List[Issue] = []
    for defn in fields:
        if not defn.is_active or defn.field_code == field_code:
            continue
        if defn.field_type is FieldType.CALCULATED and defn.formula_config() is not None:
            try:
                if field_code in formula_references(defn.formula_config().formula):
                    refs.append(_issue("REFERENCED_BY_FORMULA", f"Used in formula of {defn.field_code}", defn.field_code))
            except FormulaEvalError:
                pass
        if defn.field_type is FieldType.LOOKUP:
            cfg = defn.lookup_config()
            if cfg and any(c.target_field == field_code for c in cfg.lookup_copy_fields):
                refs.append(_issue("REFERENCED_BY_LOOKUP", f"Copied into by lookup {defn.field_code}", defn.field_code))
        if defn.field_type is FieldType.RELATED_RECORDS:
            cfg = defn.related_config()
            if cfg and cfg.related_this_field == field_code:
                refs.append(_issue("REFERENCED_BY_RELATED", f"Key of related records {defn.field_code}", defn.field_code))
    return refs


def retire_field(defn: FieldDefinition) -> FieldDefinition:
    return replace(defn, is_active=False)
