from pathlib import Path

import matplotlib.pyplot as plt


def plot_sobol_results(result, state=None, path=None, show=False):
    """
    Plot first-order and total-order Sobol' indices over time.

    Parameters
    ----------
    result : SobolResult
        Output of ``ode_sobol``.
    state : str or list[str], optional
        State variable(s) to plot (default: all).
    path : str or pathlib.Path, optional
        Directory in which 'Sobol_SIs_{state}_{method}.png' is saved. Nothing
        is written if omitted.
    show : bool, optional
        Call ``plt.show()`` after drawing.

    Returns
    -------
    figures : list[matplotlib.figure.Figure]
        One figure per plotted state variable, each with an S1 and an ST panel.
    """
    if state is None:
        states = list(result.states)
    elif isinstance(state, str):
        states = [state]
    else:
        states = list(state)

    figures = []
    for name in states:
        fig, axes = plt.subplots(1, 2, figsize=(7, 5), dpi=100, constrained_layout=True)

        for ax, kind, frame in ((axes[0], 'S1', result.S1(name)), (axes[1], 'ST', result.ST(name))):
            for par in result.pars:
                ax.plot(result.times, frame.loc[par].to_numpy(), label=f"{par} {kind}",
                        linestyle='--' if kind == 'S1' else '-', linewidth=2)
            ax.set_title(f'{kind} : State:{name} - Method:{result.sobol_method}', fontsize=10)
            ax.set_xlabel('Time', fontsize=12)
            ax.set_ylabel('Sensitivity Index', fontsize=12)
            ax.legend(loc='upper right', fontsize=10)
            if len(result.times) > 1:
                ax.set_xlim([result.times[0], result.times[-1]])

        if path is not None:
            filename = Path(path) / f'Sobol_SIs_{name}_{result.sobol_method}.png'
            fig.savefig(filename, dpi=300, bbox_inches='tight', pad_inches=0.1)
        figures.append(fig)

    if show:
        plt.show()
    return figures
