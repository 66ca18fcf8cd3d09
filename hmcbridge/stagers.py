"""Schedules splitting the warm up iterations of a chain into stages."""

import abc
from collections import OrderedDict, namedtuple


ChainStage = namedtuple('ChainStage', ['n_iter', 'adapters'])


class Stager(abc.ABC):
    """Abstract chain iteration stager."""

    @abc.abstractmethod
    def stages(self, n_warm_up_iter, n_main_iter, adapters):
        """Create dictionary specifying labels and parameters of sampling stages.

        Args:
            n_warm_up_iter (int): Number of adaptive warm up iterations, split
                between one or more adaptive stages.
            n_main_iter (int): Number of iterations in the final non-adaptive
                stage.
            adapters (Sequence[hmcbridge.adapters.Adapter]): Adapters for the
                integration transition, applied in the order given.

        Returns:
            OrderedDict[str, ChainStage]: Ordered dictionary mapping stage
                labels to the number of iterations and the adapters active in
                the stage (`None` if non-adaptive). Stages with no iterations
                are omitted.
        """


class WindowedWarmUpStager(Stager):
    """Chain iteration stager with a hierarchy of adaptive warm up stages.

    Following the approach of [Stan](https://mc-stan.org) the adaptive stages
    are split into 'fast' stages, adjusting only parameters which can be
    adapted quickly using local information such as the step size, and 'slow'
    stages which additionally adjust parameters needing more global
    information such as the metric. Adapters identify themselves as fast by
    their `is_fast` attribute.

    The warm up iterations are split into three stages:

      1. An initial fast adaptive stage with only fast adapters active.
      2. A slow adaptive stage with both slow and fast adapters active, split
         into a sequence of memoryless windows of growing size with the
         adapters reset at the start of each window.
      3. A final fast adaptive stage with only fast adapters active.

    With the default settings and 900 warm up iterations this gives stages of
    75, 25, 50, 100, 200, 400 and 50 iterations.
    """

    def __init__(
            self, n_init_slow_window_iter=25, n_init_fast_stage_iter=75,
            n_final_fast_stage_iter=50, slow_window_multiplier=2):
        """
        Args:
            n_init_slow_window_iter (int): Number of iterations in the first
                (smallest) slow adaptation window. If the three default stage
                lengths sum to more than the number of warm up iterations, a
                single slow window of approximately 75% of the iterations is
                used instead.
            n_init_fast_stage_iter (int): Number of iterations in the initial
                fast adaptation stage, or approximately 15% of the warm up
                iterations if the stage lengths do not fit.
            n_final_fast_stage_iter (int): Number of iterations in the final
                fast adaptation stage, or approximately 10% of the warm up
                iterations if the stage lengths do not fit.
            slow_window_multiplier (float): Factor by which each slow
                adaptation window is longer than the previous one.
        """
        self.n_init_slow_window_iter = n_init_slow_window_iter
        self.n_init_fast_stage_iter = n_init_fast_stage_iter
        self.n_final_fast_stage_iter = n_final_fast_stage_iter
        self.slow_window_multiplier = slow_window_multiplier

    def stages(self, n_warm_up_iter, n_main_iter, adapters):
        fast_adapters = [adapter for adapter in adapters if adapter.is_fast]
        if (self.n_init_fast_stage_iter + self.n_init_slow_window_iter +
                self.n_final_fast_stage_iter) > n_warm_up_iter:
            n_init_fast_stage_iter = int(0.15 * n_warm_up_iter)
            n_final_fast_stage_iter = int(0.1 * n_warm_up_iter)
            n_init_slow_window_iter = (
                n_warm_up_iter - n_init_fast_stage_iter -
                n_final_fast_stage_iter)
        else:
            n_init_slow_window_iter = self.n_init_slow_window_iter
            n_init_fast_stage_iter = self.n_init_fast_stage_iter
            n_final_fast_stage_iter = self.n_final_fast_stage_iter
        sampling_stages = OrderedDict(
            {'Initial fast adaptive':
                ChainStage(n_init_fast_stage_iter, fast_adapters)})
        # growing size slow adaptation windows
        n_window_iter = n_init_slow_window_iter
        slow_windows = []
        counter = 0
        n_slow_stage_iter = (
            n_warm_up_iter - n_init_fast_stage_iter - n_final_fast_stage_iter)
        while counter < n_slow_stage_iter:
            # if the window after this one would overrun the slow stage, extend
            # this window to cover all remaining slow stage iterations
            counter_next = (
                counter + int((1 + self.slow_window_multiplier) * n_window_iter)
            )
            if counter_next > n_slow_stage_iter:
                n_window_iter = n_slow_stage_iter - counter
            slow_windows.append(n_window_iter)
            counter += n_window_iter
            n_window_iter = int(self.slow_window_multiplier * n_window_iter)
        for i, n_iter in enumerate(slow_windows):
            # slow adapters need at least two samples for their estimates
            sampling_stages[
                f'Slow adaptive ({i + 1}/{len(slow_windows)})'] = ChainStage(
                    n_iter, adapters if n_iter > 1 else fast_adapters)
        sampling_stages['Final fast adaptive'] = ChainStage(
            n_final_fast_stage_iter, fast_adapters)
        sampling_stages['Main non-adaptive'] = ChainStage(n_main_iter, None)
        return OrderedDict(
            (label, stage) for label, stage in sampling_stages.items()
            if stage.n_iter > 0)
