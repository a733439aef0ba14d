from fastapi import APIRouter, Depends, Query

from palchat.models.evaluation import EvaluationSuccess
from palchat.services.evaluator import NumericEvaluator

router = APIRouter(tags=["evaluate"])


def get_evaluator() -> NumericEvaluator:
    return NumericEvaluator()


@router.get("/evaluate", response_model=EvaluationSuccess)
async def evaluate_expression(
    expression: str = Query(..., description="Arithmetic expression to evaluate."),
    evaluator: NumericEvaluator = Depends(get_evaluator),
) -> EvaluationSuccess:
    return evaluator.evaluate_or_raise(expression)
